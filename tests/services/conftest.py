"""Service test fixtures - in-memory SQLite engine for the SQL repositories.

Invariants:
    - Every test gets a fresh in-memory SQLite database with all tables
    - DatabaseSessionManager adopts that engine, so repositories see the same data
    - Seed helpers write ORM rows through a plain session factory

Design Decisions:
    - SQLite in-memory: fast, no external dependency; SQL repository tests
      run sequentially because the engine shares one connection
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

import boxoffice.models  # noqa: F401
from boxoffice.db.base import Base
from boxoffice.db.session import create_session_factory
from boxoffice.infrastructure.database import DatabaseSessionManager
from boxoffice.models.event import Event
from boxoffice.models.ticket_type import TicketType


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def db(test_engine):
    return DatabaseSessionManager(engine=test_engine)


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(engine=test_engine)


@pytest.fixture
async def sql_event(session_factory):
    now = datetime.now(timezone.utc)
    event = Event(
        name="Spring Concert",
        starts_at=now + timedelta(days=7),
        ends_at=now + timedelta(days=7, hours=4),
    )
    async with session_factory() as session:
        session.add(event)
        await session.commit()
    return event


@pytest.fixture
def add_sql_ticket_type(session_factory):
    async def _add(event_id, name, price, fee="0", total_inventory=None, tickets_sold=0):
        ticket_type = TicketType(
            event_id=event_id,
            name=name,
            price=Decimal(price),
            fee=Decimal(fee),
            total_inventory=total_inventory,
            tickets_sold=tickets_sold,
        )
        async with session_factory() as session:
            session.add(ticket_type)
            await session.commit()
        return ticket_type
    return _add


@pytest.fixture
def sold_count(session_factory):
    async def _sold(ticket_type_id):
        async with session_factory() as session:
            row = await session.get(TicketType, ticket_type_id)
            await session.refresh(row)
            return row.tickets_sold
    return _sold
