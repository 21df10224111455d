"""SQL Repositories - the storage Protocols against SQLite.

Tests:
    - Conditional increment reserves within capacity and rolls back all-or-nothing
    - Order add/get round trip, compare-and-set transitions, unique payment_id
    - Ticket qr_token uniqueness is a retryable ConstraintViolationError
    - mark_scanned succeeds once; void_for_order skips voided tickets
    - Keyset cursor listing over (issued_at, id)
    - Replay store blocks repeats until expiry or forget, then purges
    - End to end through the SQL container: checkout -> webhook -> scan

SQLite in-memory shares one connection: everything here runs sequentially.
"""

import json
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from boxoffice.core.domain_types import OrderStatus, ScanOutcome, TicketStatus
from boxoffice.core.errors import (
    ConstraintViolationError, InsufficientInventoryError, ResourceNotFoundError,
)
from boxoffice.core.order_math import LineItem, SelectionItem
from boxoffice.core.pagination import normalize_cursor_options
from boxoffice.core.records import OrderRecord, TicketRecord
from boxoffice.core.webhook_signing import compute_signature
from boxoffice.infrastructure.sql_repositories import (
    SqlEventRepository, SqlInventoryRepository, SqlOrderRepository,
    SqlReplayStore, SqlTicketRepository,
)
from boxoffice.services.container import build_sql
from boxoffice.services.inventory import InventoryReservation, ReservationRequest

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _order(event_id, ticket_type, quantity=1, **overrides):
    line = LineItem(str(ticket_type.id), quantity, ticket_type.price, ticket_type.fee, ticket_type.name)
    values = dict(
        id=uuid4(),
        event_id=event_id,
        purchaser_email="buyer@example.com",
        purchaser_name="Ada",
        line_items=[line],
        subtotal=ticket_type.price * quantity,
        discount=Decimal("0.00"),
        fees=ticket_type.fee * quantity,
        total=(ticket_type.price + ticket_type.fee) * quantity,
        status=OrderStatus.PENDING,
        created_at=NOW,
        metadata={"channel": "web"},
    )
    values.update(overrides)
    return OrderRecord(**values)


def _ticket(order, ticket_type, minutes=0, token=None):
    return TicketRecord(
        id=uuid4(),
        order_id=order.id,
        ticket_type_id=ticket_type.id,
        event_id=order.event_id,
        qr_token=token or str(uuid4()),
        qr_signature="0" * 64,
        ticket_code=f"TKT-{minutes:04d}",
        status=TicketStatus.ISSUED,
        price=ticket_type.price,
        fee=ticket_type.fee,
        issued_at=NOW + timedelta(minutes=minutes),
    )


# ─── Inventory ───────────────────────────────────────────────────

async def test_reserve_within_capacity(db, sql_event, add_sql_ticket_type, sold_count):
    general = await add_sql_ticket_type(sql_event.id, "General", "49.99", "2.50", total_inventory=5)
    inventory = InventoryReservation(SqlInventoryRepository(db))

    reservation = await inventory.reserve(sql_event.id, [ReservationRequest(general.id, 3)])

    assert await sold_count(general.id) == 3
    assert reservation.items[0].unit_price == Decimal("49.99")
    assert reservation.items[0].unit_fee == Decimal("2.50")


async def test_shortfall_rolls_back_every_increment(db, sql_event, add_sql_ticket_type, sold_count):
    general = await add_sql_ticket_type(sql_event.id, "General", "10", total_inventory=5)
    vip = await add_sql_ticket_type(sql_event.id, "VIP", "50", total_inventory=2, tickets_sold=1)
    inventory = InventoryReservation(SqlInventoryRepository(db))

    with pytest.raises(InsufficientInventoryError) as exc:
        await inventory.reserve(sql_event.id, [
            ReservationRequest(general.id, 4), ReservationRequest(vip.id, 2),
        ])

    [shortfall] = exc.value.shortfalls
    assert shortfall.name == "VIP"
    assert (shortfall.requested, shortfall.available) == (2, 1)
    assert await sold_count(general.id) == 0
    assert await sold_count(vip.id) == 1


async def test_exact_capacity_then_sold_out(db, sql_event, add_sql_ticket_type, sold_count):
    general = await add_sql_ticket_type(sql_event.id, "General", "10", total_inventory=3)
    inventory = InventoryReservation(SqlInventoryRepository(db))

    for _ in range(3):
        await inventory.reserve(sql_event.id, [ReservationRequest(general.id, 1)])
    with pytest.raises(InsufficientInventoryError):
        await inventory.reserve(sql_event.id, [ReservationRequest(general.id, 1)])
    assert await sold_count(general.id) == 3


async def test_unlimited_and_foreign_types(db, sql_event, add_sql_ticket_type):
    unlimited = await add_sql_ticket_type(sql_event.id, "Lawn", "5")
    inventory = InventoryReservation(SqlInventoryRepository(db))

    reservation = await inventory.reserve(sql_event.id, [ReservationRequest(unlimited.id, 500)])
    assert reservation.total_quantity == 500
    with pytest.raises(ResourceNotFoundError):
        await inventory.reserve(uuid4(), [ReservationRequest(unlimited.id, 1)])


async def test_release_floors_at_zero(db, sql_event, add_sql_ticket_type, sold_count):
    general = await add_sql_ticket_type(sql_event.id, "General", "10", total_inventory=5)
    inventory = InventoryReservation(SqlInventoryRepository(db))
    reservation = await inventory.reserve(sql_event.id, [ReservationRequest(general.id, 2)])

    await inventory.release(reservation)
    await inventory.release(reservation)
    assert await sold_count(general.id) == 0


# ─── Events & Orders ─────────────────────────────────────────────

async def test_event_lookup_is_utc(db, sql_event):
    events = SqlEventRepository(db)
    record = await events.get(sql_event.id)
    assert record.name == "Spring Concert"
    assert record.ends_at.tzinfo is not None
    assert await events.get(uuid4()) is None


async def test_order_round_trip(db, sql_event, add_sql_ticket_type):
    general = await add_sql_ticket_type(sql_event.id, "General", "49.99", "2.50")
    orders = SqlOrderRepository(db)
    order = _order(sql_event.id, general, 2)

    await orders.add(order)
    loaded = await orders.get(order.id)

    assert loaded.line_items == order.line_items
    assert loaded.total == Decimal("104.98")
    assert loaded.metadata == {"channel": "web"}
    assert loaded.created_at == NOW
    assert await orders.get(uuid4()) is None


async def test_order_transition_is_compare_and_set(db, sql_event, add_sql_ticket_type):
    general = await add_sql_ticket_type(sql_event.id, "General", "10")
    orders = SqlOrderRepository(db)
    order = _order(sql_event.id, general)
    await orders.add(order)

    assert await orders.transition(
        order.id, OrderStatus.PENDING, OrderStatus.PAID, payment_id="pi_1", paid_at=NOW,
    )
    assert not await orders.transition(order.id, OrderStatus.PENDING, OrderStatus.FAILED)

    paid = await orders.get(order.id)
    assert paid.status == OrderStatus.PAID
    assert paid.payment_id == "pi_1"
    assert paid.paid_at == NOW


async def test_payment_id_is_unique(db, sql_event, add_sql_ticket_type):
    general = await add_sql_ticket_type(sql_event.id, "General", "10")
    orders = SqlOrderRepository(db)
    first, second = _order(sql_event.id, general), _order(sql_event.id, general)
    await orders.add(first)
    await orders.add(second)
    await orders.transition(first.id, OrderStatus.PENDING, OrderStatus.PAID, payment_id="pi_1")

    with pytest.raises(ConstraintViolationError):
        await orders.transition(second.id, OrderStatus.PENDING, OrderStatus.PAID, payment_id="pi_1")
    assert (await orders.get(second.id)).status == OrderStatus.PENDING


async def test_order_count_and_page(db, sql_event, add_sql_ticket_type):
    general = await add_sql_ticket_type(sql_event.id, "General", "10")
    orders = SqlOrderRepository(db)
    created = []
    for minutes in range(5):
        order = _order(sql_event.id, general, created_at=NOW + timedelta(minutes=minutes))
        await orders.add(order)
        created.append(order)
    await orders.transition(created[0].id, OrderStatus.PENDING, OrderStatus.FAILED)

    assert await orders.count() == 5
    assert await orders.count(status=OrderStatus.FAILED) == 1
    assert await orders.count(event_id=uuid4()) == 0
    page = await orders.list_page(1, 2, event_id=sql_event.id)
    assert [o.id for o in page] == [created[3].id, created[2].id]


# ─── Tickets ─────────────────────────────────────────────────────

async def test_duplicate_token_is_retryable_violation(db, sql_event, add_sql_ticket_type):
    general = await add_sql_ticket_type(sql_event.id, "General", "10")
    order = _order(sql_event.id, general)
    await SqlOrderRepository(db).add(order)
    tickets = SqlTicketRepository(db)
    await tickets.add(_ticket(order, general, token="same-token"))

    with pytest.raises(ConstraintViolationError) as exc:
        await tickets.add(_ticket(order, general, token="same-token"))
    assert exc.value.retryable


async def test_mark_scanned_once_and_void(db, sql_event, add_sql_ticket_type):
    general = await add_sql_ticket_type(sql_event.id, "General", "10")
    order = _order(sql_event.id, general, 2)
    await SqlOrderRepository(db).add(order)
    tickets = SqlTicketRepository(db)
    first, second = _ticket(order, general, 0), _ticket(order, general, 1)
    await tickets.add(first)
    await tickets.add(second)

    assert await tickets.mark_scanned(first.id, NOW, "gate-1")
    assert not await tickets.mark_scanned(first.id, NOW, "gate-2")
    scanned = await tickets.get_by_token(first.qr_token)
    assert scanned.status == TicketStatus.SCANNED
    assert scanned.scanned_by == "gate-1"

    assert await tickets.void_for_order(order.id, NOW) == 2
    assert await tickets.void_for_order(order.id, NOW) == 0
    assert not await tickets.mark_scanned(second.id, NOW, None)
    assert [t.status for t in await tickets.list_for_order(order.id)] == [
        TicketStatus.VOIDED, TicketStatus.VOIDED,
    ]


async def test_ticket_cursor_listing(db, sql_event, add_sql_ticket_type):
    general = await add_sql_ticket_type(sql_event.id, "General", "10")
    order = _order(sql_event.id, general, 5)
    await SqlOrderRepository(db).add(order)
    tickets = SqlTicketRepository(db)
    added = [_ticket(order, general, m) for m in range(5)]
    for ticket in added:
        await tickets.add(ticket)

    first = await tickets.list_cursor(normalize_cursor_options(limit=2))
    assert [t.id for t in first] == [added[4].id, added[3].id, added[2].id]

    after = await tickets.list_cursor(normalize_cursor_options(cursor=str(added[3].id), limit=2))
    assert [t.id for t in after] == [added[2].id, added[1].id, added[0].id]

    before = await tickets.list_cursor(normalize_cursor_options(
        cursor=str(added[1].id), limit=2, direction="backward",
    ))
    assert [t.id for t in before] == [added[2].id, added[3].id, added[4].id]

    assert await tickets.list_cursor(normalize_cursor_options(), event_id=uuid4()) == []


# ─── Replay Store ────────────────────────────────────────────────

async def test_replay_store_blocks_until_expiry(db):
    replay = SqlReplayStore(db)
    expires = NOW + timedelta(hours=24)

    assert await replay.record("a" * 64, "payment.succeeded", "10.0.0.1", expires, NOW)
    assert not await replay.record("a" * 64, "payment.succeeded", "10.0.0.1", expires, NOW)

    later = expires + timedelta(seconds=1)
    assert await replay.record("a" * 64, "payment.succeeded", None, later + timedelta(hours=24), later)


async def test_replay_store_forget_allows_redelivery(db):
    replay = SqlReplayStore(db)
    expires = NOW + timedelta(hours=24)
    await replay.record("b" * 64, "payment.succeeded", None, expires, NOW)

    await replay.forget("b" * 64)

    assert await replay.record("b" * 64, "payment.succeeded", None, expires, NOW)


async def test_replay_store_purges_expired(db):
    replay = SqlReplayStore(db)
    await replay.record("a" * 64, "payment.failed", None, NOW + timedelta(minutes=1), NOW)
    await replay.record("b" * 64, "payment.failed", None, NOW + timedelta(hours=1), NOW)

    assert await replay.purge_expired(NOW + timedelta(minutes=5)) == 1
    assert await replay.purge_expired(NOW + timedelta(minutes=5)) == 0


async def test_health_check(db):
    assert await db.health_check()


# ─── Full Flow ───────────────────────────────────────────────────

async def test_checkout_confirm_scan_through_sql(settings, db, sql_event, add_sql_ticket_type, sold_count):
    general = await add_sql_ticket_type(sql_event.id, "General", "49.99", "2.50", total_inventory=10)
    box_office = build_sql(settings, db)

    checkout = await box_office.checkout.checkout(
        sql_event.id,
        {str(general.id): SelectionItem("General", Decimal("49.99"), Decimal("2.50"), 2)},
        "buyer@example.com",
    )
    assert await sold_count(general.id) == 2

    body = json.dumps({
        "type": "payment.succeeded",
        "order_id": str(checkout.order.id),
        "payment_id": "pi_sql",
    })
    ts = int(time.time())
    confirmed = await box_office.payments.confirm(
        body, compute_signature(settings.webhook_signing_secret, ts, body), ts,
    )
    assert confirmed.order.status == OrderStatus.PAID
    assert len(confirmed.tickets) == 2

    ticket = confirmed.tickets[0]
    first = await box_office.issuer.scan(ticket.qr_token, ticket.qr_signature, "gate-1")
    second = await box_office.issuer.scan(ticket.qr_token, ticket.qr_signature, "gate-1")
    assert first.outcome == ScanOutcome.VALID
    assert second.outcome == ScanOutcome.ALREADY_SCANNED
