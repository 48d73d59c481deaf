"""Cart management service."""
import logging
from typing import List, Dict, Any
from sqlalchemy.orm import Session
import redis
from opentelemetry import trace

from models import CartItem, Product
from monitoring import cart_additions_counter

logger = logging.getLogger(__name__)

CART_CACHE_TTL = 3600


class CartService:
    """
    Service for managing shopping carts.

    Cart rows live in the database so that order placement can clear them in
    the same transaction that creates the order. Redis only holds a per-user
    counter of additions (`cart:{user_id}`), dropped when the cart is cleared.
    """

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize cart service.

        Args:
            redis_client: Redis client for caching
        """
        self.redis_client = redis_client
        self.tracer = trace.get_tracer(__name__)

    @staticmethod
    def cache_key(user_id: str) -> str:
        return f"cart:{user_id}"

    def add_to_cart(
        self,
        db: Session,
        user_id: str,
        product_id: int,
        quantity: int
    ) -> Dict[str, Any]:
        """
        Add item to user's cart, merging with an existing line for the product.

        Args:
            db: Database session
            user_id: User identifier
            product_id: Product identifier
            quantity: Quantity to add

        Returns:
            Result with cart item details

        Raises:
            ValueError: If quantity is not positive or product not found
        """
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")

        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        with self.tracer.start_as_current_span("db.query.get_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)

            product = db.query(Product).filter(
                Product.id == product_id,
                Product.is_active.is_(True)
            ).first()

            if product is None:
                db_span.set_attribute("db.rows_returned", 0)
                raise ValueError("Product not found")
            db_span.set_attribute("db.rows_returned", 1)

        # Stock is not checked here; availability is decided at order placement.
        with self.tracer.start_as_current_span("db.query.upsert_cart_item") as db_span:
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)
            db_span.set_attribute("product.id", product_id)

            cart_item = db.query(CartItem).filter(
                CartItem.user_id == user_id,
                CartItem.product_id == product_id
            ).first()

            if cart_item:
                db_span.set_attribute("db.operation", "UPDATE")
                cart_item.quantity += quantity
            else:
                db_span.set_attribute("db.operation", "INSERT")
                cart_item = CartItem(
                    user_id=user_id,
                    product_id=product_id,
                    quantity=quantity
                )
                db.add(cart_item)
            db.commit()

            db_span.set_attribute("cart_item.id", cart_item.id)

        self._bump_cache(user_id)

        cart_additions_counter.add(1, {"product_id": str(product_id)})

        logger.info("Added product to cart", extra={
            "user_id": user_id,
            "product_id": product_id,
            "product_name": product.name,
            "quantity": quantity
        })

        return {
            "cart_item_id": cart_item.id,
            "product_name": product.name,
            "quantity": cart_item.quantity
        }

    def get_cart(self, db: Session, user_id: str) -> Dict[str, Any]:
        """
        Get user's cart contents priced at current catalog prices.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            Cart contents with items and total
        """
        items = []
        total = 0.0

        for item in self.get_cart_items(db, user_id):
            product = item.product
            item_total = float(product.price) * item.quantity
            total += item_total
            items.append({
                "id": item.id,
                "product_id": product.id,
                "product_name": product.name,
                "price": float(product.price),
                "quantity": item.quantity,
                "subtotal": item_total
            })

        return {
            "user_id": user_id,
            "items": items,
            "total": total
        }

    def get_cart_items(self, db: Session, user_id: str) -> List[CartItem]:
        """
        Get cart items for user.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            List of cart items
        """
        with self.tracer.start_as_current_span("db.query.get_cart_items") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            cart_items = db.query(CartItem).filter(
                CartItem.user_id == user_id
            ).order_by(CartItem.id).all()

            db_span.set_attribute("db.rows_returned", len(cart_items))

            return cart_items

    def clear_cart(self, db: Session, user_id: str) -> int:
        """
        Delete every cart row of the user in the caller's transaction.

        Does not commit; the caller owns the transaction and must call
        invalidate_cache once it has committed.

        Args:
            db: Database session
            user_id: User identifier

        Returns:
            Number of cart rows deleted
        """
        with self.tracer.start_as_current_span("db.query.delete_cart_items") as db_span:
            db_span.set_attribute("db.operation", "DELETE")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            deleted_count = db.query(CartItem).filter(
                CartItem.user_id == user_id
            ).delete(synchronize_session=False)

            db_span.set_attribute("db.rows_affected", deleted_count)

        return deleted_count

    def invalidate_cache(self, user_id: str) -> None:
        """
        Drop the cached cart counter.

        Args:
            user_id: User identifier
        """
        cache_key = self.cache_key(user_id)
        with self.tracer.start_as_current_span("cache.delete") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "DELETE")
            cache_span.set_attribute("cache.key", cache_key)

            try:
                self.redis_client.delete(cache_key)
            except redis.RedisError as e:
                # Counter expires on its own; the database stays authoritative
                logger.error("Failed to invalidate cart cache", extra={
                    "user_id": user_id,
                    "cache_key": cache_key,
                    "error": str(e)
                })

    def _bump_cache(self, user_id: str) -> None:
        """Count a cart addition in Redis."""
        cache_key = self.cache_key(user_id)
        with self.tracer.start_as_current_span("cache.incr") as cache_span:
            cache_span.set_attribute("cache.system", "redis")
            cache_span.set_attribute("cache.operation", "INCR")
            cache_span.set_attribute("cache.key", cache_key)

            try:
                self.redis_client.incr(cache_key)
                self.redis_client.expire(cache_key, CART_CACHE_TTL)
            except redis.RedisError as e:
                logger.error("Failed to update cart cache", extra={
                    "user_id": user_id,
                    "cache_key": cache_key,
                    "error": str(e)
                })

            cache_span.set_attribute("cache.ttl", CART_CACHE_TTL)
