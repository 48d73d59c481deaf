"""Tests for order placement."""
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import USER_ID, cart_size, fill_cart, make_product, stock_of
from errors import InsufficientStock, InvalidRequest, PersistenceError, ProductNotFound
from models import Order, OrderItem, OrderStatus, Product
from services.order_service import CartLine, PlaceOrderCommand


def command(*lines, **overrides):
    fields = {
        "user_id": USER_ID,
        "items": [CartLine(product_id=pid, quantity=qty) for pid, qty in lines],
        "shipping_address": "12 Nguyen Hue, District 1, Ho Chi Minh City",
    }
    fields.update(overrides)
    return PlaceOrderCommand(**fields)


def order_count(db):
    db.expire_all()
    return db.query(Order).count()


class TestPlaceOrderScenarios:
    def test_out_of_stock_second_item_rolls_back_everything(self, db, order_service):
        product_a = make_product(db, name="A", price="100000", stock=5)
        product_b = make_product(db, name="B", price="50000", stock=0)
        fill_cart(db, USER_ID, (product_a, 2), (product_b, 1))

        with pytest.raises(InsufficientStock) as exc_info:
            order_service.place_order(db, command(
                (product_a, 2), (product_b, 1),
                shipping_fee=Decimal("20000"),
                discount=Decimal("10000")
            ))

        assert exc_info.value.product_id == product_b
        assert stock_of(db, product_a) == 5
        assert stock_of(db, product_b) == 0
        assert order_count(db) == 0
        assert db.query(OrderItem).count() == 0
        assert cart_size(db, USER_ID) == 2

    def test_successful_order(self, db, order_service, redis_client):
        product_a = make_product(db, name="A", price="100000", stock=5)
        product_b = make_product(db, name="B", price="50000", stock=3)
        fill_cart(db, USER_ID, (product_a, 2), (product_b, 1))

        order = order_service.place_order(db, command(
            (product_a, 2), (product_b, 1),
            shipping_fee=Decimal("20000"),
            discount=Decimal("10000"),
            promo_code="SALE10"
        ))

        assert order.id is not None
        assert order.user_id == USER_ID
        assert order.status == OrderStatus.PENDING.value
        assert order.subtotal == Decimal("250000")
        assert order.shipping_fee == Decimal("20000")
        assert order.discount == Decimal("10000")
        assert order.total_amount == Decimal("260000")
        assert order.promo_code == "SALE10"
        assert [(item.product_id, item.quantity, item.price) for item in order.items] == [
            (product_a, 2, Decimal("100000")),
            (product_b, 1, Decimal("50000")),
        ]
        assert stock_of(db, product_a) == 3
        assert stock_of(db, product_b) == 2
        assert cart_size(db, USER_ID) == 0
        redis_client.delete.assert_called_once_with(f"cart:{USER_ID}")

    def test_missing_product_is_reported(self, db, order_service):
        product_a = make_product(db, stock=5)

        with pytest.raises(ProductNotFound) as exc_info:
            order_service.place_order(db, command((product_a, 1), (4242, 1)))

        assert exc_info.value.product_id == 4242
        assert stock_of(db, product_a) == 5
        assert order_count(db) == 0

    def test_inactive_product_is_reported_as_missing(self, db, order_service):
        product_id = make_product(db, stock=5, is_active=False)

        with pytest.raises(ProductNotFound):
            order_service.place_order(db, command((product_id, 1)))

    def test_duplicate_lines_cannot_oversell(self, db, order_service):
        product_id = make_product(db, stock=5)

        with pytest.raises(InsufficientStock):
            order_service.place_order(db, command((product_id, 3), (product_id, 3)))

        assert stock_of(db, product_id) == 5

    def test_duplicate_lines_within_stock(self, db, order_service):
        product_id = make_product(db, stock=5)

        order = order_service.place_order(db, command((product_id, 2), (product_id, 3)))

        assert len(order.items) == 2
        assert stock_of(db, product_id) == 0


class TestCartClearing:
    def test_whole_cart_is_cleared_even_for_unordered_products(self, db, order_service):
        ordered = make_product(db, name="Ordered", stock=5)
        not_ordered = make_product(db, name="Not ordered", stock=5)
        fill_cart(db, USER_ID, (ordered, 1), (not_ordered, 4))

        order_service.place_order(db, command((ordered, 1)))

        assert cart_size(db, USER_ID) == 0
        assert stock_of(db, not_ordered) == 5

    def test_other_users_carts_are_untouched(self, db, order_service):
        product_id = make_product(db, stock=5)
        fill_cart(db, "user_someone-e", (product_id, 1))

        order_service.place_order(db, command((product_id, 1)))

        assert cart_size(db, "user_someone-e") == 1


class TestAtomicity:
    def test_failure_after_writes_leaves_no_trace(self, db, order_service, redis_client, monkeypatch):
        product_id = make_product(db, stock=5)
        fill_cart(db, USER_ID, (product_id, 2))

        def broken_clear(db, user_id):
            raise RuntimeError("cart storage unavailable")

        monkeypatch.setattr(order_service.cart_service, "clear_cart", broken_clear)

        with pytest.raises(RuntimeError):
            order_service.place_order(db, command((product_id, 2)))

        assert order_count(db) == 0
        assert db.query(OrderItem).count() == 0
        assert stock_of(db, product_id) == 5
        assert cart_size(db, USER_ID) == 1
        redis_client.delete.assert_not_called()

    def test_database_errors_surface_as_persistence_error(self, db, order_service, monkeypatch):
        product_id = make_product(db, stock=5)

        def failing_clear(db, user_id):
            raise OperationalError("DELETE FROM cart_items", {}, Exception("disk I/O error"))

        monkeypatch.setattr(order_service.cart_service, "clear_cart", failing_clear)

        with pytest.raises(PersistenceError) as exc_info:
            order_service.place_order(db, command((product_id, 1)))

        assert "disk I/O" not in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert stock_of(db, product_id) == 5
        assert order_count(db) == 0


class TestPriceSnapshot:
    def test_catalog_price_change_does_not_touch_placed_order(self, db, order_service):
        product_id = make_product(db, price="100000", stock=5)
        order = order_service.place_order(db, command((product_id, 2), shipping_fee=Decimal("5000")))
        order_id = order.id

        product = db.get(Product, product_id)
        product.price = Decimal("999999")
        db.commit()

        db.expire_all()
        stored = order_service.get_order(db, order_id)
        assert stored.items[0].price == Decimal("100000")
        assert stored.subtotal == Decimal("200000")
        assert stored.total_amount == Decimal("205000")

    def test_new_orders_use_the_new_price(self, db, order_service):
        product_id = make_product(db, price="100000", stock=5)
        order_service.place_order(db, command((product_id, 1)))

        product = db.get(Product, product_id)
        product.price = Decimal("80000")
        db.commit()

        second = order_service.place_order(db, command((product_id, 1)))
        assert second.items[0].price == Decimal("80000")


class TestValidation:
    @pytest.mark.parametrize("overrides", [
        {"items": []},
        {"items": [CartLine(product_id=1, quantity=0)]},
        {"items": [CartLine(product_id=1, quantity=-2)]},
        {"items": [CartLine(product_id=1, quantity=1.5)]},
        {"shipping_address": ""},
        {"shipping_address": "   "},
        {"shipping_fee": Decimal("-1")},
        {"discount": "-5"},
        {"discount": "lots"},
        {"shipping_fee": Decimal("0.006")},
        {"discount": Decimal("0.004")},
        {"shipping_fee": "1e40"},
        {"idempotency_key": " "},
    ])
    def test_rejected_before_any_work(self, db, order_service, overrides):
        product_id = make_product(db, stock=5)
        fields = {"items": [CartLine(product_id=product_id, quantity=1)]}
        fields.update(overrides)

        with pytest.raises(InvalidRequest):
            order_service.place_order(db, command(**fields))

        assert stock_of(db, product_id) == 5
        assert order_count(db) == 0

    def test_stored_total_matches_stored_parts(self, db, order_service):
        product_id = make_product(db, price="100", stock=5)

        order = order_service.place_order(db, command(
            (product_id, 1),
            shipping_fee=Decimal("0.010"),
            discount=Decimal("0.00")
        ))

        db.expire_all()
        stored = order_service.get_order(db, order.id)
        assert stored.shipping_fee == Decimal("0.01")
        assert stored.total_amount == stored.subtotal + stored.shipping_fee - stored.discount

    def test_discount_above_subtotal_is_accepted(self, db, order_service):
        product_id = make_product(db, price="10000", stock=5)

        order = order_service.place_order(db, command((product_id, 1), discount=Decimal("15000")))

        assert order.total_amount == Decimal("-5000")


class TestIdempotency:
    def test_repeated_key_returns_first_order(self, db, order_service):
        product_id = make_product(db, stock=5)

        first = order_service.place_order(db, command((product_id, 2), idempotency_key="retry-1"))
        second = order_service.place_order(db, command((product_id, 2), idempotency_key="retry-1"))

        assert second.id == first.id
        assert order_count(db) == 1
        assert stock_of(db, product_id) == 3

    def test_retry_that_missed_the_first_commit_returns_first_order(self, db, order_service, monkeypatch):
        product_id = make_product(db, stock=2)
        first = order_service.place_order(db, command((product_id, 2), idempotency_key="retry-2"))

        # The retry's opening lookup ran before the first order committed
        lookups = []
        find = order_service._find_by_idempotency_key

        def find_after_first_lookup(db, user_id, key):
            lookups.append(key)
            return None if len(lookups) == 1 else find(db, user_id, key)

        monkeypatch.setattr(order_service, "_find_by_idempotency_key", find_after_first_lookup)

        second = order_service.place_order(db, command((product_id, 2), idempotency_key="retry-2"))

        assert second.id == first.id
        assert len(lookups) == 2
        assert order_count(db) == 1
        assert stock_of(db, product_id) == 0

    def test_failure_without_an_existing_order_is_reported(self, db, order_service):
        product_id = make_product(db, stock=1)

        with pytest.raises(InsufficientStock):
            order_service.place_order(db, command((product_id, 2), idempotency_key="retry-3"))

        assert order_count(db) == 0

    def test_keys_are_scoped_per_user(self, db, order_service):
        product_id = make_product(db, stock=5)

        mine = order_service.place_order(db, command((product_id, 1), idempotency_key="k"))
        theirs = order_service.place_order(
            db, command((product_id, 1), user_id="user_other-toke", idempotency_key="k")
        )

        assert mine.id != theirs.id
        assert stock_of(db, product_id) == 3

    def test_without_key_resubmission_creates_a_second_order(self, db, order_service):
        product_id = make_product(db, stock=5)

        order_service.place_order(db, command((product_id, 1)))
        order_service.place_order(db, command((product_id, 1)))

        assert order_count(db) == 2


class TestReadAccessors:
    def test_list_orders_for_user_newest_first(self, db, order_service):
        product_id = make_product(db, stock=10)
        first = order_service.place_order(db, command((product_id, 1)))
        second = order_service.place_order(db, command((product_id, 1)))
        order_service.place_order(db, command((product_id, 1), user_id="user_other-toke"))

        orders = order_service.list_orders_for_user(db, USER_ID)

        assert [order.id for order in orders] == [second.id, first.id]

    def test_list_all_orders(self, db, order_service):
        product_id = make_product(db, stock=10)
        order_service.place_order(db, command((product_id, 1)))
        order_service.place_order(db, command((product_id, 1), user_id="user_other-toke"))

        assert len(order_service.list_all_orders(db)) == 2
