"""Order placement and order management service."""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from opentelemetry import trace
from sqlalchemy.orm import Session, selectinload

from config import RESTOCK_ON_CANCEL
from database import transaction
from errors import (
    InsufficientStock,
    InvalidRequest,
    OrderError,
    OrderNotFound,
    PersistenceError,
    ProductNotFound,
)
from models import Order, OrderItem, OrderStatus
from monitoring import (
    orders_placed_counter,
    order_placement_failures_counter,
    order_amount_histogram,
    order_status_transitions_counter
)
from services.cart_service import CartService
from services.inventory_ledger import InventoryLedger
from services.order_status import ensure_transition, parse_status
from services.pricing import calculate_totals

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _to_money(name: str, value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRequest(f"{name} must be a number") from None
    if not amount.is_finite():
        raise InvalidRequest(f"{name} must be a number")
    if amount < 0:
        raise InvalidRequest(f"{name} must not be negative")
    # Stored as Numeric(12, 2); finer amounts would round apart from the total
    try:
        cents = amount.quantize(CENT)
    except InvalidOperation:
        raise InvalidRequest(f"{name} is too large") from None
    if cents != amount:
        raise InvalidRequest(f"{name} must have at most 2 decimal places")
    return cents


@dataclass
class CartLine:
    """One (product, quantity) entry of a cart submission."""
    product_id: int
    quantity: int


@dataclass
class PlaceOrderCommand:
    """
    A cart submission.

    shipping_fee, discount and promo_code come from promotion validation
    upstream and are stored as given.
    """
    user_id: str
    items: List[CartLine]
    shipping_address: str
    shipping_fee: Decimal = Decimal(0)
    discount: Decimal = Decimal(0)
    promo_code: Optional[str] = None
    idempotency_key: Optional[str] = None

    def validate(self) -> None:
        """
        Reject malformed submissions before any transaction is opened.

        Raises:
            InvalidRequest: If any field fails its shape or value check
        """
        if not self.user_id:
            raise InvalidRequest("Missing user")
        if not self.items:
            raise InvalidRequest("Order must contain at least one item")
        for line in self.items:
            if isinstance(line.product_id, bool) or not isinstance(line.product_id, int):
                raise InvalidRequest("product_id must be an integer")
            if isinstance(line.quantity, bool) or not isinstance(line.quantity, int):
                raise InvalidRequest(f"Quantity for product {line.product_id} must be an integer")
            if line.quantity < 1:
                raise InvalidRequest(f"Quantity for product {line.product_id} must be at least 1")
        if not self.shipping_address or not self.shipping_address.strip():
            raise InvalidRequest("Missing shipping address")
        if self.idempotency_key is not None and not self.idempotency_key.strip():
            raise InvalidRequest("Idempotency key must not be blank")

        self.shipping_fee = _to_money("shipping_fee", self.shipping_fee)
        self.discount = _to_money("discount", self.discount)


class OrderService:
    """Service for placing and managing orders."""

    def __init__(
        self,
        cart_service: CartService,
        restock_on_cancel: bool = RESTOCK_ON_CANCEL
    ):
        """
        Initialize order service.

        Args:
            cart_service: Cart service instance
            restock_on_cancel: Return stock when an order is cancelled
        """
        self.cart_service = cart_service
        self.restock_on_cancel = restock_on_cancel
        self.tracer = trace.get_tracer(__name__)

    def place_order(self, db: Session, command: PlaceOrderCommand) -> Order:
        """
        Place an order for a cart submission.

        Reserves stock, prices the lines, writes the order and its items,
        decrements stock and clears the user's whole cart as one transaction.
        Nothing is written unless every step succeeds.

        Args:
            db: Database session
            command: Cart submission

        Returns:
            The created order with its items loaded. For a repeated
            idempotency key, the order created by the first submission.

        Raises:
            InvalidRequest: If the submission is malformed
            ProductNotFound: If a product is missing or inactive
            InsufficientStock: If a product cannot cover its quantity
            PersistenceError: If the database write failed (StockLockTimeout
                when a stock row stayed locked past the lock timeout)
        """
        span = trace.get_current_span()
        span.set_attribute("user.id", command.user_id)
        span.set_attribute("order.item_count", len(command.items or []))

        try:
            command.validate()
        except InvalidRequest as e:
            self._record_failure(command, e)
            raise

        try:
            order_id, created = self._place(db, command)
        except OrderError as e:
            recovered_id = self._recover_duplicate_submission(db, command, e)
            if recovered_id is None:
                self._record_failure(command, e)
                raise
            order_id, created = recovered_id, False

        order = self.get_order(db, order_id)
        if not created:
            logger.info("Returning order for repeated idempotency key", extra={
                "user_id": command.user_id,
                "order_id": order.id
            })
            return order

        # Cache is only touched once the cart rows are gone for good
        self.cart_service.invalidate_cache(command.user_id)

        orders_placed_counter.add(1, {"promo": "yes" if order.promo_code else "no"})
        order_amount_histogram.record(float(order.total_amount))

        logger.info("Order placed", extra={
            "user_id": order.user_id,
            "order_id": order.id,
            "subtotal": str(order.subtotal),
            "shipping_fee": str(order.shipping_fee),
            "discount": str(order.discount),
            "total_amount": str(order.total_amount),
            "promo_code": order.promo_code,
            "item_count": len(order.items)
        })

        return order

    def _place(self, db: Session, command: PlaceOrderCommand) -> Tuple[int, bool]:
        """Run the placement transaction. Returns (order_id, created)."""
        with self.tracer.start_as_current_span("db.transaction.place_order") as tx_span:
            tx_span.set_attribute("db.operation", "INSERT")
            tx_span.set_attribute("db.table", "orders")
            tx_span.set_attribute("user.id", command.user_id)

            with transaction(db):
                if command.idempotency_key:
                    existing = self._find_by_idempotency_key(db, command.user_id, command.idempotency_key)
                    if existing is not None:
                        tx_span.set_attribute("order.id", existing.id)
                        tx_span.set_attribute("order.idempotent_replay", True)
                        return existing.id, False

                ledger = InventoryLedger(db)

                # Reserve in the order the client listed the items
                unit_prices = [
                    ledger.check_and_reserve(line.product_id, line.quantity)
                    for line in command.items
                ]

                totals = calculate_totals(
                    zip(unit_prices, (line.quantity for line in command.items)),
                    shipping_fee=command.shipping_fee,
                    discount=command.discount
                )

                order = Order(
                    user_id=command.user_id,
                    subtotal=totals.subtotal,
                    shipping_fee=totals.shipping_fee,
                    discount=totals.discount,
                    promo_code=command.promo_code,
                    total_amount=totals.total_amount,
                    status=OrderStatus.PENDING.value,
                    shipping_address=command.shipping_address.strip(),
                    idempotency_key=command.idempotency_key
                )
                db.add(order)
                db.flush()

                for line, unit_price in zip(command.items, unit_prices):
                    db.add(OrderItem(
                        order_id=order.id,
                        product_id=line.product_id,
                        quantity=line.quantity,
                        price=unit_price
                    ))
                db.flush()

                for line in command.items:
                    ledger.commit_decrement(line.product_id, line.quantity)

                cleared = self.cart_service.clear_cart(db, command.user_id)
                order_id = order.id

            tx_span.set_attribute("order.id", order_id)
            tx_span.set_attribute("order.total_amount", float(totals.total_amount))
            tx_span.set_attribute("cart.rows_cleared", cleared)
            return order_id, True

    def _find_by_idempotency_key(self, db: Session, user_id: str, key: str) -> Optional[Order]:
        return (
            db.query(Order)
            .options(selectinload(Order.items).selectinload(OrderItem.product))
            .filter(Order.user_id == user_id, Order.idempotency_key == key)
            .first()
        )

    def _recover_duplicate_submission(
        self,
        db: Session,
        command: PlaceOrderCommand,
        error: OrderError
    ) -> Optional[int]:
        """
        Find the order a concurrent submission with the same key committed.

        The lookup at the start of the placement transaction can miss an
        order that commits while this one waits on a stock row. The waiting
        submission then fails on the unique key, or on stock the other order
        already took, and the order it asked for exists under its key.

        Returns:
            The existing order id, or None if the key has no order
        """
        if not command.idempotency_key:
            return None
        try:
            with transaction(db):
                existing = self._find_by_idempotency_key(db, command.user_id, command.idempotency_key)
                order_id = existing.id if existing is not None else None
        except PersistenceError as e:
            logger.warning("Could not check for a concurrent duplicate submission", extra={
                "user_id": command.user_id,
                "error": str(e)
            })
            return None
        if order_id is not None:
            logger.info("Concurrent duplicate submission resolved to existing order", extra={
                "user_id": command.user_id,
                "order_id": order_id,
                "reason": type(error).__name__
            })
        return order_id

    def _record_failure(self, command: PlaceOrderCommand, error: OrderError) -> None:
        reason = type(error).__name__
        order_placement_failures_counter.add(1, {"reason": reason})

        log_fields = {"user_id": command.user_id, "reason": reason, "error": str(error)}
        if isinstance(error, (ProductNotFound, InsufficientStock)):
            log_fields["product_id"] = error.product_id
        if isinstance(error, InsufficientStock):
            log_fields["requested"] = error.requested
            log_fields["available"] = error.available

        if isinstance(error, PersistenceError):
            logger.error("Order placement failed", extra=log_fields)
        else:
            logger.warning("Order placement rejected", extra=log_fields)

    def get_order(self, db: Session, order_id: int) -> Order:
        """
        Get an order with its items.

        Args:
            db: Database session
            order_id: Order identifier

        Returns:
            Order

        Raises:
            OrderNotFound: If no order has this id
        """
        with self.tracer.start_as_current_span("db.query.get_order") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("order.id", order_id)

            order = (
                db.query(Order)
                .options(selectinload(Order.items).selectinload(OrderItem.product))
                .filter(Order.id == order_id)
                .first()
            )
            if order is None:
                raise OrderNotFound(order_id)
            return order

    def list_orders_for_user(self, db: Session, user_id: str) -> List[Order]:
        """
        Get all orders for a user, newest first.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            List of orders
        """
        with self.tracer.start_as_current_span("db.query.get_user_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("user.id", user_id)

            orders = (
                db.query(Order)
                .options(selectinload(Order.items).selectinload(OrderItem.product))
                .filter(Order.user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .all()
            )

            db_span.set_attribute("db.rows_returned", len(orders))
            return orders

    def list_all_orders(self, db: Session) -> List[Order]:
        """Get every order, newest first."""
        with self.tracer.start_as_current_span("db.query.get_all_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")

            orders = (
                db.query(Order)
                .options(selectinload(Order.items).selectinload(OrderItem.product))
                .order_by(Order.created_at.desc(), Order.id.desc())
                .all()
            )

            db_span.set_attribute("db.rows_returned", len(orders))
            return orders

    def update_status(self, db: Session, order_id: int, status: str) -> Order:
        """
        Move an order to a new status.

        Args:
            db: Database session
            order_id: Order identifier
            status: Target status name

        Returns:
            The updated order

        Raises:
            InvalidRequest: If status is not a known order status
            OrderNotFound: If no order has this id
            InvalidTransition: If the order is already delivered or cancelled
        """
        target = parse_status(status)

        with self.tracer.start_as_current_span("db.transaction.update_order_status") as db_span:
            db_span.set_attribute("db.operation", "UPDATE")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("order.id", order_id)
            db_span.set_attribute("order.status.target", target.value)

            try:
                with transaction(db):
                    order = (
                        db.query(Order)
                        .filter(Order.id == order_id)
                        .with_for_update()
                        .populate_existing()
                        .first()
                    )
                    if order is None:
                        raise OrderNotFound(order_id)

                    current = OrderStatus(order.status)
                    changed = ensure_transition(current, target, order_id)
                    if changed:
                        order.status = target.value
                        if target == OrderStatus.CANCELLED and self.restock_on_cancel:
                            ledger = InventoryLedger(db)
                            for item in order.items:
                                ledger.restock(item.product_id, item.quantity)
            except OrderError as e:
                logger.warning("Order status update rejected", extra={
                    "order_id": order_id,
                    "target_status": target.value,
                    "error": str(e)
                })
                raise

        if changed:
            order_status_transitions_counter.add(1, {
                "from": current.value,
                "to": target.value
            })
            logger.info("Order status updated", extra={
                "order_id": order_id,
                "from_status": current.value,
                "to_status": target.value,
                "restocked": target == OrderStatus.CANCELLED and self.restock_on_cancel
            })

        return self.get_order(db, order_id)
