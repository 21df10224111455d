"""API test fixtures - the FastAPI app over an in-memory BoxOffice container.

Invariants:
    - No lifespan: the container is installed on app.state directly,
      so no database is touched
    - httpx AsyncClient talks to the app in-process via ASGITransport
"""

import json
import time

import pytest
from httpx import ASGITransport, AsyncClient

from boxoffice.core.webhook_signing import compute_signature
from boxoffice.main import create_app

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def app(settings, box_office):
    app = create_app(settings, use_lifespan=False)
    app.state.box_office = box_office
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def signed_webhook():
    """Headers and body for a webhook delivery signed with the test secret."""
    def _sign(payload: dict, timestamp: int | None = None):
        body = json.dumps(payload)
        ts = timestamp if timestamp is not None else int(time.time())
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": compute_signature(WEBHOOK_SECRET, ts, body),
            "X-Webhook-Timestamp": str(ts),
        }
        return body, headers
    return _sign


@pytest.fixture
def order_body(event, general):
    def _body(quantity=2, **overrides):
        body = {
            "event_id": str(event.id),
            "purchaser_email": "buyer@example.com",
            "purchaser_name": "Ada",
            "selection": {
                str(general.id): {
                    "name": "General", "price": "49.99", "fee": "2.50", "quantity": quantity,
                },
            },
        }
        body.update(overrides)
        return body
    return _body
