"""Inventory ledger: the only code path that mutates product stock."""
import logging
import time
from decimal import Decimal
from typing import Dict

from opentelemetry import trace
from sqlalchemy import update
from sqlalchemy.orm import Session

from errors import InsufficientStock, ProductNotFound
from models import Product
from monitoring import stock_lock_wait_histogram, stock_restocked_counter

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Transaction-scoped stock reservation.

    A ledger is bound to one session and must be used inside one
    `database.transaction()` block. `check_and_reserve` locks the product row
    (SELECT ... FOR UPDATE) so that concurrent placements for the same
    product serialize on it until this transaction commits or rolls back.
    `commit_decrement` re-checks stock in the UPDATE itself, which keeps the
    decrement safe on backends that ignore FOR UPDATE.
    """

    def __init__(self, db: Session):
        """
        Initialize ledger.

        Args:
            db: Database session with an open transaction
        """
        self.db = db
        self.tracer = trace.get_tracer(__name__)
        self.reserved: Dict[int, int] = {}

    def check_and_reserve(self, product_id: int, quantity: int) -> Decimal:
        """
        Lock a product row and claim stock for this transaction.

        Args:
            product_id: Product identifier
            quantity: Quantity to reserve

        Returns:
            Unit price at the moment of reservation

        Raises:
            ProductNotFound: If product is missing or inactive
            InsufficientStock: If stock cannot cover this and earlier
                reservations of the same product
        """
        with self.tracer.start_as_current_span("db.query.lock_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT FOR UPDATE")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)

            lock_start = time.time()
            product = (
                self.db.query(Product)
                .filter(Product.id == product_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            lock_wait = time.time() - lock_start
            stock_lock_wait_histogram.record(lock_wait, {"product_id": str(product_id)})
            db_span.set_attribute("db.lock_wait_ms", int(lock_wait * 1000))

            if product is None or not product.is_active:
                db_span.set_attribute("db.rows_returned", 0)
                raise ProductNotFound(product_id)
            db_span.set_attribute("db.rows_returned", 1)

            already_reserved = self.reserved.get(product_id, 0)
            if already_reserved + quantity > product.stock:
                db_span.set_attribute("product.stock", product.stock)
                raise InsufficientStock(
                    product_id,
                    requested=already_reserved + quantity,
                    available=product.stock
                )

            self.reserved[product_id] = already_reserved + quantity
            return Decimal(product.price)

    def commit_decrement(self, product_id: int, quantity: int) -> None:
        """
        Apply a reserved decrement.

        Args:
            product_id: Product identifier
            quantity: Quantity to remove from stock

        Raises:
            InsufficientStock: If the guarded update matched no row
            ValueError: If the quantity was never reserved by this ledger
        """
        if self.reserved.get(product_id, 0) < quantity:
            raise ValueError(f"Product {product_id} has no reservation for quantity {quantity}")

        with self.tracer.start_as_current_span("db.query.update_product_stock") as update_span:
            update_span.set_attribute("db.operation", "UPDATE")
            update_span.set_attribute("db.table", "products")
            update_span.set_attribute("product.id", product_id)

            result = self.db.execute(
                update(Product)
                .where(Product.id == product_id, Product.stock >= quantity)
                .values(stock=Product.stock - quantity)
                .execution_options(synchronize_session=False)
            )
            update_span.set_attribute("db.rows_affected", result.rowcount)

            if result.rowcount != 1:
                raise InsufficientStock(product_id, requested=quantity)

            self.reserved[product_id] -= quantity

    def restock(self, product_id: int, quantity: int) -> None:
        """
        Return units to stock inside the current transaction.

        Args:
            product_id: Product identifier
            quantity: Quantity to add back
        """
        with self.tracer.start_as_current_span("db.query.restock_product") as update_span:
            update_span.set_attribute("db.operation", "UPDATE")
            update_span.set_attribute("db.table", "products")
            update_span.set_attribute("product.id", product_id)

            result = self.db.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(stock=Product.stock + quantity)
                .execution_options(synchronize_session=False)
            )
            update_span.set_attribute("db.rows_affected", result.rowcount)

        stock_restocked_counter.add(quantity, {"product_id": str(product_id)})
        logger.info("Returned units to stock", extra={
            "product_id": product_id,
            "quantity": quantity
        })
