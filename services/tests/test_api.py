"""
HTTP layer tests

The app runs in-process over httpx.ASGITransport with the database session
and the Redis client replaced through dependency overrides.

Tests:
  1. Product + stock + order happy path, cache and events on Redis
  2. Engine errors map to HTTP status codes
  3. Bulk, billing and health endpoints
  4. Redis outages never fail a committed mutation
"""
import json
from datetime import date
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from app.core.redis_client import get_redis
from app.db.database import get_db
from app.main import app
from app.models.billing import MerchantServiceSubscription


@pytest_asyncio.fixture
async def client(session_factory, fake_redis):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def seed_product(client, sku="SKUAPI1", quantity=10, warehouse="wh-a"):
    r = await client.post(
        "/products",
        json={"merchant_id": "merchant-1", "sku": sku, "name": "Ankara Tote", "unit_price": "100.00"},
        headers={"X-Actor-Id": "admin-1"},
    )
    assert r.status_code == 201, r.text
    product = r.json()
    r = await client.post(
        "/stock/receive",
        json={"product_id": product["id"], "warehouse_id": warehouse, "quantity": quantity},
    )
    assert r.status_code == 201, r.text
    return product, r.json()


def order_body(product_id, quantity):
    return {
        "merchant_id": "merchant-1",
        "customer_name": "Ada Obi",
        "customer_phone": "+2348000000000",
        "items": [{"product_id": product_id, "quantity": quantity, "unit_price": "100.00"}],
    }


# ─── Test 1: Happy path ────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_order_flow_over_http(client, fake_redis):
    product, stock = await seed_product(client)

    r = await client.post("/orders", json=order_body(product["id"], 4), headers={"X-Actor-Id": "user-1"})
    assert r.status_code == 201, r.text
    order = r.json()
    assert order["status"] == "PENDING"
    assert order["total_amount"] == "400.00"

    r = await client.get(f"/stock/availability/{product['id']}")
    assert r.json()["available_quantity"] == 6
    assert fake_redis.cache[f"stock:{product['id']}"] == "6"

    r = await client.post(f"/orders/{order['id']}/status", json={"status": "CONFIRMED"})
    assert r.status_code == 200
    assert r.json()["status"] == "CONFIRMED"

    r = await client.get(f"/orders/{order['id']}/history")
    assert [h["status"] for h in r.json()] == ["PENDING", "CONFIRMED"]

    r = await client.get(f"/orders/{order['id']}/allocations")
    assert [(a["stock_item_id"], a["quantity"]) for a in r.json()] == [(stock["id"], 4)]

    events = [json.loads(message)["event"] for channel, message in fake_redis.published if channel == "orders:events"]
    assert events == ["order.created", "order.status_changed"]
    assert any(channel == f"order:{order['id']}" for channel, _ in fake_redis.published)


@pytest.mark.asyncio
async def test_stock_endpoints(client):
    product, stock = await seed_product(client)

    r = await client.post(f"/stock/{stock['id']}/adjust", json={"delta": -2, "reason": "cycle count"})
    assert r.status_code == 200
    assert r.json()["quantity"] == 8

    r = await client.post(f"/stock/{stock['id']}/transfer", json={"to_warehouse_id": "wh-b", "quantity": 3})
    assert r.status_code == 200
    source, target = r.json()
    assert (source["quantity"], target["quantity"]) == (5, 3)

    r = await client.get(f"/stock/{stock['id']}/movements")
    assert [m["movement_type"] for m in r.json()] == ["STOCK_IN", "ADJUSTMENT", "TRANSFER"]

    r = await client.get(f"/stock/{stock['id']}/reconcile")
    assert r.json()["balanced"] is True

    r = await client.get("/stock", params={"product_id": product["id"], "limit": 1})
    body = r.json()
    assert (body["total"], body["pages"], len(body["items"])) == (2, 2, 1)


# ─── Test 2: Error mapping ─────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_insufficient_stock_is_409(client):
    product, _ = await seed_product(client, quantity=2)

    r = await client.post("/orders", json=order_body(product["id"], 5))

    assert r.status_code == 409
    assert r.json()["error"] == "insufficient_stock"
    r = await client.get(f"/stock/availability/{product['id']}")
    assert r.json()["available_quantity"] == 2


@pytest.mark.asyncio
async def test_invalid_transition_is_409_and_unknown_order_404(client):
    product, _ = await seed_product(client)
    order = (await client.post("/orders", json=order_body(product["id"], 1))).json()

    r = await client.post(f"/orders/{order['id']}/status", json={"status": "DELIVERED"})
    assert r.status_code == 409
    assert r.json()["error"] == "invalid_transition"

    r = await client.get("/orders/does-not-exist")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_duplicate_sku_is_409_and_bad_sku_422(client):
    await seed_product(client, sku="DUP1")

    r = await client.post("/products", json={"merchant_id": "merchant-1", "sku": "DUP1", "name": "Again"})
    assert r.status_code == 409

    r = await client.post("/products", json={"merchant_id": "merchant-1", "sku": "bad sku!", "name": "Nope"})
    assert r.status_code == 422

    r = await client.post("/products", json={"merchant_id": "merchant-1", "sku": "TOTE-RED", "name": "Nope"})
    assert r.status_code == 422


# ─── Test 3: Bulk, billing, health ─────────────────────────────────────────────
@pytest.mark.asyncio
async def test_bulk_endpoint_reports_per_item(client):
    product, _ = await seed_product(client)
    order = (await client.post("/orders", json=order_body(product["id"], 1))).json()

    r = await client.post(
        "/bulk-operations",
        json={"type": "orders", "action": "cancel", "item_ids": [order["id"], "ghost"]},
    )

    assert r.status_code == 200
    assert r.json()["processed"] == 1
    assert r.json()["failed"] == 1
    assert r.json()["errors"][0]["id"] == "ghost"

    r = await client.post("/bulk-operations", json={"type": "orders", "action": "explode", "item_ids": ["x"]})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_billing_endpoints(client, session_factory):
    async with session_factory() as session:
        session.add(MerchantServiceSubscription(
            merchant_id="merchant-1", service_id="svc-1", service_name="Warehousing",
            start_date=date(2024, 1, 1), price_at_subscription=Decimal("500.00"), quantity=1,
        ))
        await session.commit()

    body = {"date": "2024-03-01", "merchant_ids": ["merchant-1"]}
    first = (await client.post("/billing/daily-charges", json=body)).json()
    second = (await client.post("/billing/daily-charges", json=body)).json()
    assert first["total_records"] == 1
    assert first["billing_records"][0]["id"] == second["billing_records"][0]["id"]

    r = await client.get("/billing/daily-charges/merchant-1", params={"date": "2024-03-01"})
    assert r.json()["accumulated_charges"] == "500.00"

    record_id = first["billing_records"][0]["id"]
    r = await client.post(f"/billing/records/{record_id}/paid", json={"payment_id": "pay-1"})
    assert r.json()["status"] == "PAID"


@pytest.mark.asyncio
async def test_health_and_root(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"

    r = await client.get("/")
    assert r.json()["service"] == "fulfillment-engine"


# ─── Test 4: Redis outage ──────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_redis_outage_does_not_fail_orders(client, fake_redis):
    fake_redis.fail = True
    product, _ = await seed_product(client)

    r = await client.post("/orders", json=order_body(product["id"], 1))
    assert r.status_code == 201

    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "degraded"
