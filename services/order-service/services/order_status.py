"""Order status state machine."""
from typing import Optional

from errors import InvalidRequest, InvalidTransition
from models import OrderStatus

# Admins pick the target; only leaving a terminal status is forbidden, so
# cancelled is reachable from pending, processing and shipped.
TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def parse_status(value: str) -> OrderStatus:
    """Parse a status name, rejecting anything outside OrderStatus."""
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidRequest(f"Invalid status '{value}'") from None


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def ensure_transition(
    current: OrderStatus,
    target: OrderStatus,
    order_id: Optional[int] = None
) -> bool:
    """
    Check a status change.

    Args:
        current: Status the order is in
        target: Requested status
        order_id: Order identifier, used in the error only

    Returns:
        True if the status changes, False for a no-op on a live order

    Raises:
        InvalidTransition: If the order is in a terminal status
    """
    if is_terminal(current):
        raise InvalidTransition(order_id, current.value, target.value)
    return current != target
