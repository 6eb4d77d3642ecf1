import asyncio
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

import orders
from conftest import create_product, register
from errors import EmptyCartError
from schemas import OrderItem


def later(seconds):
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def add(client, headers, product_id, quantity=1):
    res = client.post("/api/cart", json={"product_id": product_id, "quantity": quantity}, headers=headers)
    assert res.status_code == 200, res.text


def test_checkout_splits_orders_per_vendor(client, customer, vendor, second_vendor):
    headers, user_id = customer
    v1_headers, v1_id = vendor
    v2_headers, v2_id = second_vendor
    product_a = create_product(client, v1_headers, name="A", price=10.00)
    product_b = create_product(client, v2_headers, name="B", price=5.00)
    add(client, headers, product_a, 2)
    add(client, headers, product_b, 1)

    res = client.post("/api/orders/checkout", json={"full_name": "Buyer", "paymentMethod": "dummy"}, headers=headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["total"] == 25.0
    by_vendor = {o["vendor_id"]: o for o in body["orders"]}
    assert set(by_vendor) == {v1_id, v2_id}
    assert by_vendor[v1_id]["total"] == 20.0
    assert by_vendor[v2_id]["total"] == 5.0
    assert all(o["user_id"] == user_id for o in body["orders"])
    assert all(o["checkout_id"] == body["checkout_id"] for o in body["orders"])
    assert all(o["status"] == "paid" for o in body["orders"])
    assert by_vendor[v1_id]["shipping"]["full_name"] == "Buyer"

    assert client.get("/api/cart", headers=headers).json() == []
    assert len(client.get("/api/orders/user", headers=headers).json()) == 2


@pytest.mark.parametrize(
    "lines",
    [
        [(0, 1.99, 3)],
        [(0, 2.50, 1), (0, 7.25, 4)],
        [(0, 3.10, 2), (1, 0.10, 3), (2, 99.99, 1), (1, 4.00, 5)],
    ],
)
def test_checkout_produces_one_order_per_vendor_with_exact_totals(client, db, customer, lines):
    headers, user_id = customer
    vendors = {}
    expected = {}
    for vendor_index, price, quantity in lines:
        if vendor_index not in vendors:
            vendors[vendor_index] = register(client, f"v{vendor_index}@example.com", role="vendor")
        vendor_headers, vendor_id = vendors[vendor_index]
        product_id = create_product(client, vendor_headers, price=price)
        add(client, headers, product_id, quantity)
        expected[vendor_id] = expected.get(vendor_id, 0) + price * quantity

    placed = orders.checkout(user_id)

    assert len(placed) == len(vendors)
    for order in placed:
        assert order["total"] == round(expected[order["vendor_id"]], 2)
        assert all(item["vendor_id"] == order["vendor_id"] for item in order["items"])
    assert db["cart"].count_documents({"user_id": user_id}) == 0


def test_checkout_on_empty_cart_fails_and_writes_nothing(client, db, customer):
    headers, user_id = customer
    res = client.post("/api/orders/checkout", headers=headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Cart is empty"
    assert db["order"].count_documents({}) == 0
    with pytest.raises(EmptyCartError):
        orders.checkout(user_id)


def test_second_checkout_of_same_cart_gets_nothing(client, db, customer, vendor):
    headers, user_id = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))

    assert len(orders._claim_cart_lines(user_id)) == 1
    assert orders._claim_cart_lines(user_id) == []


def test_order_prices_are_snapshotted(client, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    product_id = create_product(client, vendor_headers, price=8.0)
    add(client, headers, product_id, 2)
    order_id = client.post("/api/orders/checkout", headers=headers).json()["orders"][0]["id"]

    client.patch(f"/api/vendor/products/{product_id}", json={"price": 100.0}, headers=vendor_headers)

    order = client.get(f"/api/orders/{order_id}", headers=headers).json()
    assert order["total"] == 16.0
    assert order["items"][0]["price"] == 8.0


def test_inactive_products_are_dropped_at_checkout(client, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    keep = create_product(client, vendor_headers, price=3.0)
    drop = create_product(client, vendor_headers, price=50.0)
    add(client, headers, keep)
    add(client, headers, drop)
    client.patch(f"/api/vendor/products/{drop}", json={"is_active": False}, headers=vendor_headers)

    body = client.post("/api/orders/checkout", headers=headers).json()
    assert body["total"] == 3.0
    assert [i["product_id"] for i in body["orders"][0]["items"]] == [keep]


def test_failed_order_write_restores_the_cart(client, db, customer, vendor, monkeypatch):
    headers, _ = customer
    vendor_headers, _ = vendor
    product_id = create_product(client, vendor_headers)
    add(client, headers, product_id, 2)

    def unreachable(self, *args, **kwargs):
        raise AutoReconnect("connection reset")

    monkeypatch.setattr(mongomock.Collection, "insert_many", unreachable)
    res = client.post("/api/orders/checkout", headers=headers)

    assert res.status_code == 503
    assert res.headers["Retry-After"] == "5"
    assert db["order"].count_documents({}) == 0
    assert client.get("/api/cart/count", headers=headers).json() == 2


def test_paid_order_is_fulfilled_once_due(client, db, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))
    order_id = client.post("/api/orders/checkout", headers=headers).json()["orders"][0]["id"]

    stored = db["order"].find_one({})
    assert stored["next_status"] == "fulfilled"
    assert stored["status_due_at"] is not None

    assert orders.advance_due_orders(now=later(5)) == 0
    assert client.get(f"/api/orders/{order_id}", headers=headers).json()["status"] == "paid"

    assert orders.advance_due_orders(now=later(orders.FULFILLMENT_DELAY_SECONDS + 1)) == 1
    order = client.get(f"/api/orders/{order_id}", headers=headers).json()
    assert order["status"] == "fulfilled"
    assert order["next_status"] is None
    assert order["status_due_at"] is None


def test_transitions_are_idempotent(client, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))
    order = client.post("/api/orders/checkout", headers=headers).json()["orders"][0]

    oid = ObjectId(order["id"])
    assert orders.apply_transition(oid, "paid", "fulfilled") is True
    assert orders.apply_transition(oid, "paid", "fulfilled") is False
    assert orders.advance_due_orders(now=later(3600)) == 0


def test_pending_orders_walk_through_paid_to_fulfilled(client, customer, vendor, monkeypatch):
    monkeypatch.setattr(orders, "ORDER_INITIAL_STATUS", "pending")
    headers, _ = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))
    order = client.post("/api/orders/checkout", headers=headers).json()["orders"][0]
    assert order["status"] == "pending"
    assert order["next_status"] == "paid"

    step = later(orders.PAYMENT_DELAY_SECONDS + 1)
    assert orders.advance_due_orders(now=step) == 1
    assert orders.advance_due_orders(now=step) == 0
    assert client.get(f"/api/orders/{order['id']}", headers=headers).json()["status"] == "paid"

    assert orders.advance_due_orders(now=step + timedelta(seconds=orders.FULFILLMENT_DELAY_SECONDS)) == 1
    assert client.get(f"/api/orders/{order['id']}", headers=headers).json()["status"] == "fulfilled"


def test_schedule_survives_without_in_memory_state(client, db, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))
    client.post("/api/orders/checkout", headers=headers)

    # a due order found in the store is completed by any later pass
    db["order"].update_many({}, {"$set": {"status_due_at": datetime(2000, 1, 1)}})
    assert orders.advance_due_orders() == 1
    assert db["order"].find_one({})["status"] == "fulfilled"


def test_cancel_order(client, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))
    order_id = client.post("/api/orders/checkout", headers=headers).json()["orders"][0]["id"]

    res = client.post(f"/api/orders/{order_id}/cancel", headers=headers)
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    assert orders.advance_due_orders(now=later(3600)) == 0
    assert client.post(f"/api/orders/{order_id}/cancel", headers=headers).status_code == 409


def test_fulfilled_order_cannot_be_cancelled(client, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))
    order_id = client.post("/api/orders/checkout", headers=headers).json()["orders"][0]["id"]
    orders.advance_due_orders(now=later(3600))

    res = client.post(f"/api/orders/{order_id}/cancel", headers=headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Order is already fulfilled"


def test_orders_are_private_to_their_buyer(client, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))
    order_id = client.post("/api/orders/checkout", headers=headers).json()["orders"][0]["id"]

    other_headers, _ = register(client, "snoop@example.com")
    assert client.get(f"/api/orders/{order_id}", headers=other_headers).status_code == 404
    assert client.post(f"/api/orders/{order_id}/cancel", headers=other_headers).status_code == 404
    assert client.get("/api/user/orders", headers=other_headers).json() == []


def test_split_and_total_helpers():
    items = [
        OrderItem(product_id="a", vendor_id="v1", name="A", price=0.1, quantity=3),
        OrderItem(product_id="b", vendor_id="v2", name="B", price=1.0, quantity=1),
        OrderItem(product_id="c", vendor_id="v1", name="C", price=0.2, quantity=1),
    ]
    groups = orders.split_by_vendor(items)
    assert list(groups) == ["v1", "v2"]
    assert [i.product_id for i in groups["v1"]] == ["a", "c"]
    assert orders.order_total(groups["v1"]) == 0.5


def test_checkout_with_nothing_purchasable_keeps_the_cart(client, db, customer, vendor):
    headers, user_id = customer
    vendor_headers, _ = vendor
    product_id = create_product(client, vendor_headers)
    add(client, headers, product_id, 2)
    client.patch(f"/api/vendor/products/{product_id}", json={"is_active": False}, headers=vendor_headers)

    res = client.post("/api/orders/checkout", headers=headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "No purchasable items in cart"
    assert db["order"].count_documents({}) == 0

    client.patch(f"/api/vendor/products/{product_id}", json={"is_active": True}, headers=vendor_headers)
    lines = list(db["cart"].find({"user_id": user_id}))
    assert [(line["product_id"], line["quantity"]) for line in lines] == [(product_id, 2)]


def test_unexpected_checkout_error_restores_the_cart(client, db, customer, vendor, monkeypatch):
    headers, user_id = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers), 3)

    def broken(*args, **kwargs):
        raise KeyError("vendor_id")

    monkeypatch.setattr(orders, "_snapshot_items", broken)
    with pytest.raises(KeyError):
        orders.checkout(user_id)
    assert db["cart"].count_documents({"user_id": user_id}) == 1
    assert db["order"].count_documents({}) == 0


class StopWorker(BaseException):
    pass


def test_worker_keeps_polling_after_a_failed_pass(monkeypatch):
    calls = []

    def flaky(now=None):
        calls.append(now)
        if len(calls) == 1:
            raise KeyError("status")
        if len(calls) == 3:
            raise StopWorker()
        return 0

    monkeypatch.setattr(orders, "advance_due_orders", flaky)
    with pytest.raises(StopWorker):
        asyncio.run(orders.fulfillment_worker(0))
    assert len(calls) == 3


def test_only_due_orders_are_loaded(client, db, customer, vendor):
    headers, _ = customer
    vendor_headers, _ = vendor
    add(client, headers, create_product(client, vendor_headers))
    client.post("/api/orders/checkout", headers=headers)

    assert "next_status_1_status_due_at_1" in db["order"].index_information()
    stored = db["order"].find_one({})
    assert stored["status_due_at"].tzinfo is None
    assert orders.advance_due_orders(now=later(orders.FULFILLMENT_DELAY_SECONDS - 5)) == 0
    assert orders.advance_due_orders(now=later(orders.FULFILLMENT_DELAY_SECONDS + 5)) == 1
