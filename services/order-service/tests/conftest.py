"""Pytest fixtures for order service tests."""
import os
import tempfile
from decimal import Decimal
from unittest.mock import MagicMock

# Must run before any service module reads config
_DB_DIR = tempfile.mkdtemp(prefix="order-service-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'orders.db')}"
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""
os.environ["PYROSCOPE_SERVER_ADDRESS"] = ""
os.environ["LOCK_TIMEOUT_SECONDS"] = "30"
os.environ["RESTOCK_ON_CANCEL"] = "false"

import pytest
import redis

from database import SessionLocal, engine
from models import Base, CartItem, Product
from services.cart_service import CartService
from services.order_service import OrderService

USER_ID = "user_user-token"


@pytest.fixture(autouse=True)
def fresh_schema():
    """Recreate every table so each test starts from an empty database."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    """
    A database session for service-level tests.

    SQLite serializes transactions, so a test should do all of its reads and
    writes through this one session rather than opening others alongside it.
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis_client():
    return MagicMock(spec=redis.Redis)


@pytest.fixture
def cart_service(redis_client):
    return CartService(redis_client)


@pytest.fixture
def order_service(cart_service):
    return OrderService(cart_service)


def make_product(db, name="Widget", price="100000", stock=5, is_active=True):
    """Insert a product and commit, leaving no transaction open."""
    product = Product(
        name=name,
        price=Decimal(str(price)),
        stock=stock,
        is_active=is_active,
        category="Test"
    )
    db.add(product)
    db.flush()
    product_id = product.id
    db.commit()
    return product_id


def fill_cart(db, user_id, *lines):
    """Put (product_id, quantity) lines straight into a user's cart."""
    for product_id, quantity in lines:
        db.add(CartItem(user_id=user_id, product_id=product_id, quantity=quantity))
    db.commit()


def stock_of(db, product_id):
    db.expire_all()
    return db.get(Product, product_id).stock


def cart_size(db, user_id):
    db.expire_all()
    return db.query(CartItem).filter(CartItem.user_id == user_id).count()
