"""Tests for the cart service."""
import pytest
import redis

from conftest import USER_ID, cart_size, make_product


class TestAddToCart:
    def test_merges_lines_for_the_same_product(self, db, cart_service):
        product_id = make_product(db, name="Lamp")

        first = cart_service.add_to_cart(db, USER_ID, product_id, 1)
        second = cart_service.add_to_cart(db, USER_ID, product_id, 2)

        assert second["cart_item_id"] == first["cart_item_id"]
        assert second["quantity"] == 3
        assert cart_size(db, USER_ID) == 1

    def test_inactive_product_is_rejected(self, db, cart_service):
        product_id = make_product(db, is_active=False)
        with pytest.raises(ValueError, match="Product not found"):
            cart_service.add_to_cart(db, USER_ID, product_id, 1)

    def test_redis_outage_does_not_block_adding(self, db, cart_service, redis_client):
        product_id = make_product(db)
        redis_client.incr.side_effect = redis.ConnectionError("redis down")

        result = cart_service.add_to_cart(db, USER_ID, product_id, 1)

        assert result["quantity"] == 1
        assert cart_size(db, USER_ID) == 1


class TestGetCart:
    def test_prices_at_current_catalog_price(self, db, cart_service):
        cheap = make_product(db, name="Cheap", price="1500.50")
        dear = make_product(db, name="Dear", price="20000")
        cart_service.add_to_cart(db, USER_ID, cheap, 2)
        cart_service.add_to_cart(db, USER_ID, dear, 1)

        cart = cart_service.get_cart(db, USER_ID)

        assert [item["product_name"] for item in cart["items"]] == ["Cheap", "Dear"]
        assert cart["total"] == pytest.approx(23001.0)


class TestClearCart:
    def test_clear_waits_for_caller_commit(self, db, cart_service):
        product_id = make_product(db)
        cart_service.add_to_cart(db, USER_ID, product_id, 1)

        assert cart_service.clear_cart(db, USER_ID) == 1
        db.rollback()

        assert cart_size(db, USER_ID) == 1

    def test_invalidate_cache_swallows_redis_errors(self, cart_service, redis_client):
        redis_client.delete.side_effect = redis.ConnectionError("redis down")
        cart_service.invalidate_cache(USER_ID)
        redis_client.delete.assert_called_once_with(f"cart:{USER_ID}")
