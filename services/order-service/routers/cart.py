"""Cart API router."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from schemas import AddToCartRequest, AddToCartResponse, CartResponse
from auth import verify_token, get_user_id_from_token
from dependencies import get_cart_service
from services.cart_service import CartService

router = APIRouter(prefix="/cart", tags=["cart"])


@router.post("/add", response_model=AddToCartResponse)
def add_to_cart(
    request: AddToCartRequest,
    db: Session = Depends(get_db),
    token: str = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    """Add item to cart - requires authentication."""
    user_id = get_user_id_from_token(token)

    try:
        result = cart_service.add_to_cart(
            db=db,
            user_id=user_id,
            product_id=request.product_id,
            quantity=request.quantity
        )
    except ValueError as e:
        status_code = 404 if str(e) == "Product not found" else 400
        raise HTTPException(status_code=status_code, detail=str(e))

    return {
        "message": "Item added to cart",
        **result
    }


@router.get("", response_model=CartResponse)
def get_cart(
    db: Session = Depends(get_db),
    token: str = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    """Get user's cart - requires authentication."""
    user_id = get_user_id_from_token(token)
    return cart_service.get_cart(db, user_id)


@router.delete("")
def clear_cart(
    db: Session = Depends(get_db),
    token: str = Depends(verify_token),
    cart_service: CartService = Depends(get_cart_service)
):
    """Empty user's cart - requires authentication."""
    user_id = get_user_id_from_token(token)
    removed = cart_service.clear_cart(db, user_id)
    db.commit()
    cart_service.invalidate_cache(user_id)
    return {"message": "Cart cleared", "removed": removed}
