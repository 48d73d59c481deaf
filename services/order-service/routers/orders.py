"""Orders API router."""
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from errors import (
    InsufficientStock,
    InvalidRequest,
    InvalidTransition,
    OrderError,
    OrderNotFound,
    PersistenceError,
    ProductNotFound,
    StockLockTimeout,
)
from schemas import (
    OrderResponse,
    OrdersListResponse,
    PlaceOrderRequest,
    PlaceOrderResponse,
    UpdateStatusRequest,
)
from auth import verify_token, get_user_id_from_token, is_admin, require_admin
from dependencies import get_order_service
from services.order_service import CartLine, OrderService, PlaceOrderCommand

router = APIRouter(prefix="/orders", tags=["orders"])


def to_http_error(error: OrderError) -> HTTPException:
    """Map an order engine error to the HTTP error shown to clients."""
    if isinstance(error, StockLockTimeout):
        return HTTPException(
            status_code=503,
            detail=str(error),
            headers={"Retry-After": str(error.retry_after)}
        )
    if isinstance(error, PersistenceError):
        return HTTPException(status_code=500, detail=str(error))
    if isinstance(error, InsufficientStock):
        return HTTPException(status_code=400, detail={
            "message": str(error),
            "product_id": error.product_id,
            "requested": error.requested,
            "available": error.available
        })
    if isinstance(error, ProductNotFound):
        return HTTPException(status_code=404, detail={
            "message": str(error),
            "product_id": error.product_id
        })
    if isinstance(error, OrderNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidTransition):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, InvalidRequest):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=500, detail="Internal server error")


@router.post("", response_model=PlaceOrderResponse, status_code=201)
def place_order(
    request: PlaceOrderRequest,
    idempotency_key: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    token: str = Depends(verify_token),
    order_service: OrderService = Depends(get_order_service)
):
    """Place an order from a cart submission - requires authentication."""
    command = PlaceOrderCommand(
        user_id=get_user_id_from_token(token),
        items=[CartLine(product_id=line.product_id, quantity=line.quantity) for line in request.items],
        shipping_address=request.shipping_address,
        shipping_fee=request.shipping_fee,
        discount=request.discount,
        promo_code=request.promo_code,
        idempotency_key=idempotency_key
    )

    try:
        order = order_service.place_order(db, command)
    except OrderError as e:
        raise to_http_error(e)

    return {
        "message": "Order created successfully",
        "order": order
    }


@router.get("", response_model=OrdersListResponse)
def get_orders(
    db: Session = Depends(get_db),
    token: str = Depends(verify_token),
    order_service: OrderService = Depends(get_order_service)
):
    """Get user's orders - requires authentication."""
    user_id = get_user_id_from_token(token)
    return {"orders": order_service.list_orders_for_user(db, user_id)}


@router.get("/admin", response_model=OrdersListResponse)
def get_all_orders(
    db: Session = Depends(get_db),
    token: str = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """Get every order - admin only."""
    return {"orders": order_service.list_all_orders(db)}


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(verify_token),
    order_service: OrderService = Depends(get_order_service)
):
    """Get one order - owner or admin."""
    try:
        order = order_service.get_order(db, order_id)
    except OrderError as e:
        raise to_http_error(e)

    # Other users' orders look the same as missing ones
    if order.user_id != get_user_id_from_token(token) and not is_admin(token):
        raise to_http_error(OrderNotFound(order_id))
    return order


@router.put("/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: int,
    request: UpdateStatusRequest,
    db: Session = Depends(get_db),
    token: str = Depends(require_admin),
    order_service: OrderService = Depends(get_order_service)
):
    """Update order status - admin only."""
    try:
        return order_service.update_status(db, order_id, request.status)
    except OrderError as e:
        raise to_http_error(e)
