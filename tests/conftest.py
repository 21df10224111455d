"""Root conftest - shared test configuration and in-memory domain fixtures."""

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Ensure tests never pick up real secrets or a real database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TICKET_SIGNING_SECRET", "test-ticket-secret")
os.environ.setdefault("WEBHOOK_SIGNING_SECRET", "test-webhook-secret")
os.environ.setdefault("LOG_FORMAT", "text")

from boxoffice.config import Settings  # noqa: E402
from boxoffice.infrastructure.memory_repositories import InMemoryStore  # noqa: E402
from boxoffice.services.container import build_memory  # noqa: E402

TICKET_SECRET = "test-ticket-secret"
WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        ticket_signing_secret=TICKET_SECRET,
        webhook_signing_secret=WEBHOOK_SECRET,
        promo_codes={"EARLY10": {"discount_type": "percentage", "amount": "10"}},
        _env_file=None,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def event(store):
    now = datetime.now(timezone.utc)
    return store.add_event(
        "Spring Concert", starts_at=now + timedelta(days=7),
        ends_at=now + timedelta(days=7, hours=4),
    )


@pytest.fixture
def general(store, event):
    """General admission: 49.99 + 2.50 fee, 10 seats."""
    return store.add_ticket_type(
        event.id, "General", Decimal("49.99"), Decimal("2.50"), total_inventory=10,
    )


@pytest.fixture
def vip(store, event):
    """VIP: 120.00 + 5.00 fee, 2 seats."""
    return store.add_ticket_type(
        event.id, "VIP", Decimal("120.00"), Decimal("5.00"), total_inventory=2,
    )


@pytest.fixture
async def box_office(settings, store):
    """In-memory container; limiter sweeps stopped after each test."""
    container = build_memory(settings, store)
    yield container
    await container.shutdown()
