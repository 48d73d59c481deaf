#!/usr/bin/env python3
"""
Stock contention generator for the order service
Many buyers fill their carts with the same product and check out at once,
then the admin order list is used to confirm no more units were sold than
were in stock
"""

import requests
import random
import time
import threading
import uuid
from collections import Counter
from datetime import datetime

API_URL = "http://localhost:8000"
AUTH_TOKENS = ["user-token-123", "test-token-789"]
ADMIN_TOKEN = "admin-token-456"

ADDRESSES = [
    "12 Nguyen Hue, District 1, Ho Chi Minh City",
    "1 Le Loi, Hoan Kiem, Hanoi",
    "5 Tran Phu, Hai Chau, Da Nang",
]

results = Counter()
results_lock = threading.Lock()


def get_headers(token):
    return {"Authorization": f"Bearer {token}"}


def log(message):
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{timestamp}] {message}")


def record(outcome):
    with results_lock:
        results[outcome] += 1


class Buyer:
    def __init__(self, buyer_id, token):
        self.buyer_id = buyer_id
        self.token = token

    def add_to_cart(self, product_id, quantity):
        try:
            response = requests.post(
                f"{API_URL}/cart/add",
                json={"product_id": product_id, "quantity": quantity},
                headers=get_headers(self.token),
                timeout=5
            )
            if response.status_code == 200:
                return True
            log(f"Buyer {self.buyer_id}: Failed to add to cart - {response.status_code}")
        except requests.RequestException as e:
            log(f"Buyer {self.buyer_id}: Failed to add to cart - {e}")
        return False

    def checkout(self, product_id, quantity, barrier, retry_same_key):
        # A double-click resends the same key; the service must return one order
        key = str(uuid.uuid4())
        body = {
            "items": [{"product_id": product_id, "quantity": quantity}],
            "shipping_address": random.choice(ADDRESSES),
            "shipping_fee": "20000",
        }
        headers = {**get_headers(self.token), "Idempotency-Key": key}

        barrier.wait()
        attempts = 2 if retry_same_key else 1
        for _ in range(attempts):
            try:
                response = requests.post(f"{API_URL}/orders", json=body, headers=headers, timeout=30)
            except requests.RequestException as e:
                log(f"Buyer {self.buyer_id}: Checkout error - {e}")
                record("error")
                return

            if response.status_code == 201:
                order = response.json()["order"]
                log(f"Buyer {self.buyer_id}: Order {order['id']} placed")
                record("placed")
            elif response.status_code == 400:
                detail = response.json()["detail"]
                log(f"Buyer {self.buyer_id}: Out of stock - {detail}")
                record("out_of_stock")
            elif response.status_code == 503:
                log(f"Buyer {self.buyer_id}: Stock busy, retry after {response.headers.get('Retry-After')}s")
                record("busy")
            else:
                log(f"Buyer {self.buyer_id}: Checkout failed - {response.status_code}")
                record("failed")


def units_sold(product_id):
    """Count units of the product across every order, as seen by an admin."""
    response = requests.get(f"{API_URL}/orders/admin", headers=get_headers(ADMIN_TOKEN), timeout=10)
    response.raise_for_status()
    order_ids = set()
    units = 0
    for order in response.json()["orders"]:
        for item in order["items"]:
            if item["product_id"] == product_id:
                order_ids.add(order["id"])
                units += item["quantity"]
    return len(order_ids), units


def run_contention(product_id, buyers, quantity, retry_ratio):
    log(f"Starting {buyers} buyers for product {product_id}, {quantity} unit(s) each")

    orders_before, units_before = units_sold(product_id)

    barrier = threading.Barrier(buyers)
    threads = []
    for n in range(buyers):
        buyer = Buyer(f"buyer_{n:03d}", random.choice(AUTH_TOKENS))
        buyer.add_to_cart(product_id, quantity)
        thread = threading.Thread(
            target=buyer.checkout,
            args=(product_id, quantity, barrier, random.random() < retry_ratio)
        )
        threads.append(thread)

    started = time.time()
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    elapsed = time.time() - started

    orders_after, units_after = units_sold(product_id)

    log("=" * 60)
    log(f"Finished in {elapsed:.2f}s")
    for outcome, count in sorted(results.items()):
        log(f"  {outcome}: {count}")
    log(f"New orders for product: {orders_after - orders_before}")
    log(f"New units sold: {units_after - units_before}")
    log("=" * 60)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Race checkouts for one product")
    parser.add_argument(
        "--product-id",
        type=int,
        default=6,
        help="Product to contend for (default: 6)"
    )
    parser.add_argument(
        "--buyers",
        type=int,
        default=20,
        help="Number of concurrent buyers (default: 20)"
    )
    parser.add_argument(
        "--quantity",
        type=int,
        default=1,
        help="Units per order (default: 1)"
    )
    parser.add_argument(
        "--retry-ratio",
        type=float,
        default=0.2,
        help="Share of buyers that resend their checkout (default: 0.2)"
    )
    parser.add_argument(
        "--url",
        type=str,
        default="http://localhost:8000",
        help="API URL (default: http://localhost:8000)"
    )

    args = parser.parse_args()
    API_URL = args.url

    log("=" * 60)
    log("Order Service Stock Contention")
    log("=" * 60)
    log(f"API URL: {API_URL}")
    log("=" * 60)

    run_contention(args.product_id, args.buyers, args.quantity, args.retry_ratio)
