"""Order total calculation."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Tuple


@dataclass(frozen=True)
class OrderTotals:
    """Totals frozen onto an order at placement time."""
    subtotal: Decimal
    shipping_fee: Decimal
    discount: Decimal
    total_amount: Decimal


def calculate_totals(
    lines: Iterable[Tuple[Decimal, int]],
    shipping_fee: Decimal = Decimal(0),
    discount: Decimal = Decimal(0)
) -> OrderTotals:
    """
    Compute order totals.

    The discount is applied as given and the grand total is not clamped at
    zero; promotion legitimacy is decided before the order reaches us.

    Args:
        lines: (unit_price, quantity) pairs, priced at reservation time
        shipping_fee: Shipping fee
        discount: Discount amount

    Returns:
        OrderTotals with subtotal and grand total
    """
    subtotal = sum((Decimal(price) * quantity for price, quantity in lines), Decimal(0))
    shipping_fee = Decimal(shipping_fee)
    discount = Decimal(discount)
    return OrderTotals(
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        discount=discount,
        total_amount=subtotal + shipping_fee - discount
    )
