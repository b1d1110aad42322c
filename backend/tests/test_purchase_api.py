"""
End-to-end API tests: list, stock, fund, buy, deliver, approve.
"""

import pytest
from decimal import Decimal

from backend.app.models.enums import UserRole


@pytest.fixture
def admin(auth_headers):
    return auth_headers("admin-1", UserRole.ADMIN)


@pytest.fixture
def seller(auth_headers):
    return auth_headers("seller-1", UserRole.SELLER)


@pytest.fixture
def buyer(auth_headers):
    return auth_headers("buyer-1", UserRole.BUYER)


async def top_up(client, admin, user_id, amount, reference=None):
    response = await client.post(
        "/v1/admin/wallets/top-up", headers=admin,
        json={"user_id": user_id, "amount": amount, "reference": reference},
    )
    assert response.status_code == 200, response.text
    return response.json()


async def pooled_product(client, seller, price="10.00", payloads=("KEY-1",)):
    created = await client.post("/v1/seller/products", headers=seller, json={
        "name": "Steam key", "price": price, "stock_policy": "pooled", "delivery_mode": "auto",
    })
    assert created.status_code == 201, created.text
    product = created.json()
    assert product["is_available"] is False

    stocked = await client.post(
        f"/v1/seller/products/{product['id']}/delivery-items", headers=seller,
        json={"items": [{"payload": p, "item_type": "license_key"} for p in payloads]},
    )
    assert stocked.status_code == 200, stocked.text
    return product["id"]


@pytest.mark.asyncio
async def test_pooled_purchase_flow(client, admin, seller, buyer):
    product_id = await pooled_product(client, seller)
    await top_up(client, admin, "buyer-1", "25.00")

    catalog = await client.get("/v1/products")
    assert [p["id"] for p in catalog.json()] == [product_id]

    bought = await client.post(
        "/v1/purchases", headers={**buyer, "Idempotency-Key": "click-1"}, json={"product_id": product_id}
    )
    assert bought.status_code == 201, bought.text
    order = bought.json()
    assert order["status"] == "delivered"
    assert Decimal(order["new_balance"]) == Decimal("15.00")

    replay = await client.post(
        "/v1/purchases", headers={**buyer, "Idempotency-Key": "click-1"}, json={"product_id": product_id}
    )
    assert replay.status_code == 200
    assert replay.json()["order_id"] == order["order_id"]
    assert replay.json()["replayed"] is True

    detail = await client.get(f"/v1/orders/{order['order_id']}", headers=buyer)
    assert detail.status_code == 200
    assert detail.json()["delivered_item"]["payload"] == "KEY-1"

    approved = await client.post(f"/v1/orders/{order['order_id']}/approve", headers=buyer)
    assert approved.status_code == 200
    assert Decimal(approved.json()["released_amount"]) == Decimal("9.00")

    wallet = await client.get("/v1/wallet", headers=seller)
    assert Decimal(wallet.json()["available"]) == Decimal("9.00")

    again = await client.post(f"/v1/orders/{order['order_id']}/approve", headers=buyer)
    assert again.status_code == 409
    assert again.json()["details"]["kind"] == "ALREADY_APPROVED"


@pytest.mark.asyncio
async def test_sold_out_pooled_product(client, admin, seller, auth_headers):
    product_id = await pooled_product(client, seller)
    other = auth_headers("buyer-2")
    await top_up(client, admin, "buyer-1", "10.00")
    await top_up(client, admin, "buyer-2", "10.00")

    first = await client.post(
        "/v1/purchases", headers={**auth_headers("buyer-1"), "Idempotency-Key": "a"}, json={"product_id": product_id}
    )
    assert first.status_code == 201

    second = await client.post(
        "/v1/purchases", headers={**other, "Idempotency-Key": "b"}, json={"product_id": product_id}
    )
    assert second.status_code == 409
    assert second.json()["error_code"] == "ERR_STOCK_001"

    catalog = await client.get("/v1/products")
    assert catalog.json() == []


@pytest.mark.asyncio
async def test_purchase_validation(client, admin, seller, buyer):
    product_id = await pooled_product(client, seller)

    no_key = await client.post("/v1/purchases", headers=buyer, json={"product_id": product_id})
    assert no_key.status_code == 422

    broke = await client.post(
        "/v1/purchases", headers={**buyer, "Idempotency-Key": "k"}, json={"product_id": product_id}
    )
    assert broke.status_code == 402
    assert broke.json()["details"] == {"kind": "INSUFFICIENT_FUNDS", "required": "10.00", "available": "0.00"}

    bad_settings = await client.post("/v1/seller/products", headers=seller, json={
        "name": "Broken", "price": "1.00", "stock_policy": "pooled", "delivery_mode": "manual",
    })
    assert bad_settings.status_code == 400


@pytest.mark.asyncio
async def test_manual_delivery_and_dispute_refund(client, admin, seller, buyer):
    created = await client.post("/v1/seller/products", headers=seller, json={
        "name": "Boosting service", "price": "40.00", "stock_policy": "counted", "stock": 2,
    })
    product_id = created.json()["id"]
    await top_up(client, admin, "buyer-1", "40.00")

    bought = await client.post(
        "/v1/purchases", headers={**buyer, "Idempotency-Key": "m1"}, json={"product_id": product_id}
    )
    order_id = bought.json()["order_id"]
    assert bought.json()["status"] == "pending_delivery"

    sales = await client.get("/v1/seller/orders", headers=seller)
    assert [o["id"] for o in sales.json()] == [order_id]

    delivered = await client.post(
        f"/v1/seller/orders/{order_id}/deliver", headers=seller, json={"payload": {"account": "booster#1"}}
    )
    assert delivered.status_code == 200
    assert delivered.json()["status"] == "delivered"

    disputed = await client.post(f"/v1/orders/{order_id}/dispute", headers=buyer, json={"reason": "Not done"})
    assert disputed.json()["status"] == "disputed"

    resolved = await client.post(
        f"/v1/admin/orders/{order_id}/resolve-dispute", headers=admin, json={"refund": True}
    )
    assert resolved.json()["status"] == "refunded"

    wallet = await client.get("/v1/wallet", headers=buyer)
    assert Decimal(wallet.json()["available"]) == Decimal("40.00")

    reconcile = await client.get("/v1/admin/wallets/seller-1/reconcile", headers=admin)
    assert reconcile.json()["balanced"] is True


@pytest.mark.asyncio
async def test_intent_flow_over_http(client, admin, seller, buyer):
    product_id = await pooled_product(client, seller, price="5.00")
    await top_up(client, admin, "buyer-1", "5.00")

    intent = await client.post("/v1/purchases/intents", json={"product_id": product_id})
    assert intent.status_code == 201
    token = intent.json()["token"]

    resumed = await client.post(f"/v1/purchases/intents/{token}/resume", headers=buyer, json={})
    assert resumed.status_code == 201
    assert resumed.json()["status"] == "delivered"

    replayed = await client.post(f"/v1/purchases/intents/{token}/resume", headers=buyer, json={})
    assert replayed.status_code == 200


@pytest.mark.asyncio
async def test_top_up_reference_and_ledger(client, admin, buyer):
    first = await top_up(client, admin, "buyer-1", "12.50", reference="pi_123")
    second = await top_up(client, admin, "buyer-1", "12.50", reference="pi_123")

    assert second["replayed"] is True
    assert Decimal(second["available"]) == Decimal("12.50")

    ledger = await client.get("/v1/wallet/ledger", headers=buyer)
    assert [e["reason"] for e in ledger.json()] == ["top-up"]
    assert first["ledger_entry_id"] == second["ledger_entry_id"]


@pytest.mark.asyncio
async def test_notification_inbox_over_http(client, admin, seller, buyer):
    product_id = await pooled_product(client, seller)
    await top_up(client, admin, "buyer-1", "10.00")
    await client.post("/v1/purchases", headers={**buyer, "Idempotency-Key": "n1"}, json={"product_id": product_id})

    inbox = await client.get("/v1/notifications", headers=buyer)
    events = sorted(n["event"] for n in inbox.json())
    assert events == ["delivered", "new_order"]

    count = await client.get("/v1/notifications/unread-count", headers=buyer)
    assert count.json()["unread"] == 2

    assert (await client.patch("/v1/notifications/read-all", headers=buyer)).json()["count"] == 2
    assert (await client.get("/v1/notifications/unread-count", headers=buyer)).json()["unread"] == 0

    dispatched = await client.post("/v1/admin/ops/notifications/dispatch", headers=admin)
    assert dispatched.status_code == 200
    assert dispatched.json()["sent"] >= 2


@pytest.mark.asyncio
async def test_product_snapshot_cache_invalidated_on_update(client, seller, redis_client_session):
    created = await client.post("/v1/seller/products", headers=seller, json={"name": "Skin", "price": "3.00"})
    product_id = created.json()["id"]

    first = await client.get(f"/v1/products/{product_id}")
    assert first.json()["price"] == "3.00"
    assert f"cache:product:{product_id}" in redis_client_session.store

    await client.patch(f"/v1/seller/products/{product_id}", headers=seller, json={"price": "4.00"})
    assert f"cache:product:{product_id}" not in redis_client_session.store

    second = await client.get(f"/v1/products/{product_id}")
    assert second.json()["price"] == "4.00"

    assert (await client.get("/v1/products/999")).status_code == 404
