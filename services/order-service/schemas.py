"""Pydantic schemas for request/response validation."""
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict
from typing import List, Optional


class AddToCartRequest(BaseModel):
    """Schema for add to cart request."""
    product_id: int
    quantity: int


class AddToCartResponse(BaseModel):
    """Schema for add to cart response."""
    message: str
    cart_item_id: int
    product_name: str
    quantity: int


class CartItemResponse(BaseModel):
    """Schema for cart item in response."""
    id: int
    product_id: int
    product_name: str
    price: float
    quantity: int
    subtotal: float


class CartResponse(BaseModel):
    """Schema for cart response."""
    user_id: str
    items: List[CartItemResponse]
    total: float


class OrderLineRequest(BaseModel):
    """One cart line of an order submission."""
    product_id: int
    quantity: int


class PlaceOrderRequest(BaseModel):
    """
    Schema for placing an order.

    Value checks (non-empty items, positive quantities, address present,
    non-negative amounts) are done by the order service so that they are
    reported the same way whatever the caller.
    """
    items: List[OrderLineRequest]
    shipping_address: str
    shipping_fee: Decimal = Decimal(0)
    discount: Decimal = Decimal(0)
    promo_code: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    """Schema for order status update."""
    status: str


class OrderItemResponse(BaseModel):
    """Schema for order line item in response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    product_name: Optional[str] = None
    quantity: int
    price: float


class OrderResponse(BaseModel):
    """Schema for order response."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    subtotal: float
    shipping_fee: float
    discount: float
    promo_code: Optional[str] = None
    total_amount: float
    status: str
    shipping_address: str
    created_at: datetime
    items: List[OrderItemResponse]


class PlaceOrderResponse(BaseModel):
    """Schema for place order response."""
    message: str
    order: OrderResponse


class OrdersListResponse(BaseModel):
    """Schema for orders list response."""
    orders: List[OrderResponse]
