"""Orders API - checkout over HTTP and the error envelope.

Tests:
    - 201 with stored prices and a pending status
    - 409 INSUFFICIENT_INVENTORY names every shortfall
    - 400 for malformed bodies and selections, 404 for unknown events
    - 429 with Retry-After once the order policy is exhausted
"""

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from boxoffice.config import Settings
from boxoffice.main import create_app
from boxoffice.services.container import build_memory


async def test_create_order(client, order_body, store, general):
    response = await client.post("/api/v1/orders", json=order_body(quantity=3))

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["subtotal"] == "149.97"
    assert data["fees"] == "7.50"
    assert data["total"] == "157.47"
    assert data["line_items"][0]["display_name"] == "General"
    assert store.ticket_types[general.id].tickets_sold == 3


async def test_create_order_with_promo(client, order_body):
    response = await client.post(
        "/api/v1/orders", json=order_body(quantity=2, promo_code="early10"),
    )
    data = response.json()
    assert data["promo_code"] == "EARLY10"
    assert data["discount"] == "10.00"


async def test_shortfall_is_409_with_details(client, order_body, general):
    response = await client.post("/api/v1/orders", json=order_body(quantity=11))

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "INSUFFICIENT_INVENTORY"
    assert error["details"]["shortfalls"] == [{
        "ticket_type_id": str(general.id),
        "name": "General",
        "requested": 11,
        "available": 10,
    }]


async def test_body_validation_is_400(client, order_body):
    response = await client.post("/api/v1/orders", json=order_body(event_id="nope"))

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"][0]["field"] == "body.event_id"


async def test_bad_selection_is_400(client, order_body):
    response = await client.post(
        "/api/v1/orders", json=order_body(selection={"not-a-uuid": {"quantity": 1}}),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_SELECTION"


async def test_empty_selection_is_400(client, order_body, general):
    response = await client.post("/api/v1/orders", json=order_body(quantity=0))
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_SELECTION"


async def test_unknown_event_is_404(client, order_body):
    response = await client.post("/api/v1/orders", json=order_body(event_id=str(uuid4())))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"


@pytest.fixture
async def limited_client(store):
    settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        ticket_signing_secret="test-ticket-secret",
        webhook_signing_secret="test-webhook-secret",
        rate_limit_overrides={"order": {"max_requests": 2}},
        _env_file=None,
    )
    box_office = build_memory(settings, store)
    app = create_app(settings, use_lifespan=False)
    app.state.box_office = box_office
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as ac:
        yield ac, box_office
    await box_office.shutdown()


async def test_order_rate_limit_is_429(limited_client, order_body):
    client, box_office = limited_client
    headers = {"X-Forwarded-For": "198.51.100.7"}
    for _ in range(2):
        assert (await client.post("/api/v1/orders", json=order_body(1), headers=headers)).status_code == 201

    response = await client.post("/api/v1/orders", json=order_body(1), headers=headers)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.json()["error"]["code"] == "RATE_LIMITED"
    assert box_office.metrics.get_counter("rate_limit.exceeded", {"policy": "order"}) == 1

    other = await client.post(
        "/api/v1/orders", json=order_body(1), headers={"X-Forwarded-For": "198.51.100.8"},
    )
    assert other.status_code == 201
