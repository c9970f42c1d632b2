from datetime import datetime, timedelta
from uuid import uuid4

import httpx
import pytest

from services.restock_service.app import app, get_engine

from .conftest import JACKET_M


@pytest.fixture
async def client(catalog):
    app.dependency_overrides[get_engine] = lambda: catalog
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def _backorder_body(quantity: int = 1, variant_id: str = "jacket-m", email: str = "buyer@example.com"):
    return {
        "user_id": "user-1",
        "customer_email": email,
        "items": [{"product_id": "jacket", "variant_id": variant_id, "quantity": quantity, "size": "M", "price": 199.0}],
        "total_amount": 199.0 * quantity,
    }


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_subscribe_and_duplicate(client):
    body = {"email": "a@x.com", "product_id": "jacket", "variant_id": "jacket-m"}

    created = await client.post("/waitlist/subscribe", json=body)
    duplicate = await client.post("/waitlist/subscribe", json=body)

    assert created.status_code == 200
    assert created.json()["outcome"] == "created"
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["message"] == "Already subscribed to this product waitlist"

    status = await client.get(
        "/waitlist/status", params={"email": "a@x.com", "product_id": "jacket", "variant_id": "jacket-m"}
    )
    assert status.json() == {"subscribed": True}


async def test_subscribe_validation_and_unknown_product(client):
    bad = await client.post("/waitlist/subscribe", json={"email": "nope", "product_id": "jacket"})
    missing = await client.post("/waitlist/subscribe", json={"email": "a@x.com", "product_id": "ghost"})

    assert bad.status_code == 400
    assert bad.json()["detail"]["error"] == "validation"
    assert missing.status_code == 404


async def test_backorder_lifecycle(client):
    created = await client.post("/backorders", json=_backorder_body(2))
    assert created.status_code == 201
    order_id = created.json()["order_id"]

    fetched = await client.get(f"/backorders/{order_id}")
    assert fetched.json()["status"] == "pending"

    cancelled = await client.post(f"/backorders/{order_id}/cancel")
    again = await client.post(f"/backorders/{order_id}/cancel")

    assert cancelled.status_code == 200
    assert again.status_code == 409
    assert again.json()["detail"]["current_status"] == "cancelled"


async def test_in_stock_backorder_conflict(client):
    response = await client.post("/backorders", json=_backorder_body(1, variant_id="jacket-l"))

    assert response.status_code == 409
    assert response.json()["detail"]["current_stock"] == 3


async def test_unknown_backorder(client):
    assert (await client.get(f"/backorders/{uuid4()}")).status_code == 404
    assert (await client.post(f"/backorders/{uuid4()}/cancel")).status_code == 404


async def test_set_stock_reconciles(client, transport):
    created = await client.post("/backorders", json=_backorder_body(2))
    await client.post("/waitlist/subscribe", json={"email": "a@x.com", "product_id": "jacket", "variant_id": "jacket-m"})

    response = await client.put("/inventory/jacket/stock", json={"variant_id": "jacket-m", "new_stock": 5})

    assert response.status_code == 200
    body = response.json()
    assert body["previous_stock"] == 0
    assert body["fulfilled_orders"] == [created.json()["order_id"]]
    assert body["remaining_quantity"] == 3
    assert body["notifications_sent"] == 1
    assert len(transport.to("a@x.com")) == 1

    stock = await client.get("/inventory/jacket/stock", params={"variant_id": "jacket-m"})
    assert stock.json()["quantity_available"] == 3


async def test_set_stock_rejects_negative_and_unknown(client):
    negative = await client.put("/inventory/jacket/stock", json={"variant_id": "jacket-m", "new_stock": -1})
    unknown = await client.put("/inventory/ghost/stock", json={"new_stock": 1})

    assert negative.status_code == 422
    assert unknown.status_code == 404


async def test_reserve_all_or_nothing(client):
    response = await client.post("/inventory/reserve", json={"items": [
        {"product_id": "scarf", "quantity": 2},
        {"product_id": "jacket", "variant_id": "jacket-l", "quantity": 4},
    ]})

    assert response.status_code == 409
    scarf = await client.get("/inventory/scarf/stock")
    assert scarf.json()["quantity_available"] == 10


async def test_restock_dates(client):
    future = (datetime.utcnow() + timedelta(days=6)).isoformat()
    past = (datetime.utcnow() - timedelta(days=1)).isoformat()

    accepted = await client.put(
        "/restock-dates", json={"product_id": "boots", "variant_id": "boots-42", "expected_date": future}
    )
    rejected = await client.put(
        "/restock-dates", json={"product_id": "boots", "variant_id": "boots-42", "expected_date": past}
    )

    assert accepted.status_code == 200
    assert rejected.status_code == 400

    upcoming = await client.get("/restock-dates")
    assert [entry["product_id"] for entry in upcoming.json()] == ["boots"]

    single = await client.get("/restock-dates/boots", params={"variant_id": "boots-42"})
    assert single.json()["expected_date"] is not None


async def test_track_rejects_unknown_action(client):
    response = await client.post(f"/notifications/track/{uuid4()}/forward")

    assert response.status_code == 400


async def test_reservation_token_endpoint(client, catalog):
    subscribed = await catalog.waitlist.subscribe("a@x.com", JACKET_M)
    token = catalog.dispatcher.make_reservation_token(subscribed.subscription_id)

    valid = await client.get(f"/notifications/reservations/{token}")
    invalid = await client.get("/notifications/reservations/forged.token")

    assert valid.json() == {"valid": True, "subscription_id": str(subscribed.subscription_id)}
    assert invalid.json()["valid"] is False


async def test_pending_backorders_variant_filter_needs_product(client):
    await client.post("/backorders", json=_backorder_body(1))

    filtered = await client.get("/backorders/pending", params={"product_id": "jacket", "variant_id": "jacket-m"})
    rejected = await client.get("/backorders/pending", params={"variant_id": "jacket-m"})

    assert len(filtered.json()) == 1
    assert rejected.status_code == 400


async def test_restock_history(client):
    future = (datetime.utcnow() + timedelta(days=6)).isoformat()
    await client.put("/restock-dates", json={"product_id": "boots", "variant_id": "boots-42", "expected_date": future})

    history = await client.get("/restock-dates/boots/history", params={"variant_id": "boots-42"})

    assert history.status_code == 200
    assert [entry["variant_id"] for entry in history.json()] == ["boots-42"]
