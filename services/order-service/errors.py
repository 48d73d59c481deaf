"""Order placement error taxonomy."""
from typing import Optional


class OrderError(Exception):
    """Base class for every error raised by the order engine."""


class InvalidRequest(OrderError):
    """Client-supplied data failed shape or value checks."""


class ProductNotFound(OrderError):
    """Product does not exist or is no longer active."""

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class InsufficientStock(OrderError):
    """Requested quantity exceeds the stock available right now."""

    def __init__(self, product_id: int, requested: int, available: Optional[int] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(f"Insufficient stock for product {product_id}")


class OrderNotFound(OrderError):
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class InvalidTransition(OrderError):
    """Status update rejected by the order state machine."""

    def __init__(self, order_id: Optional[int], current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from '{current}' to '{target}'")


class PersistenceError(OrderError):
    """Storage-layer failure. The message is safe to show to callers."""

    def __init__(self, message: str = "Order could not be saved, please try again"):
        super().__init__(message)


class StockLockTimeout(PersistenceError):
    """Gave up waiting for a contended stock row. Safe to retry."""

    retry_after = 1

    def __init__(self):
        super().__init__("Product stock is busy, please retry")
