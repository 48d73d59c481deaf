"""Dependency injection for services."""
import redis
from fastapi import Depends, Request

from services.cart_service import CartService
from services.order_service import OrderService


def get_redis(request: Request) -> redis.Redis:
    """Get Redis client from app state."""
    return request.app.state.redis_client


def get_cart_service(redis_client: redis.Redis = Depends(get_redis)) -> CartService:
    """Get cart service instance."""
    return CartService(redis_client)


def get_order_service(cart_service: CartService = Depends(get_cart_service)) -> OrderService:
    """Get order service instance."""
    return OrderService(cart_service)
