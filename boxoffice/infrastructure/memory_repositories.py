"""In-Memory Repositories - process-local implementations of the storage Protocols.

Invariants:
    - Same observable semantics as the SQL repositories, including the
      conditional increment, compare-and-set transitions and unique tokens
    - Inventory units of work are serialized by one asyncio.Lock and journal
      every increment so an exception restores the prior counts exactly
    - Every method yields to the event loop at least once, so concurrent
      callers really interleave

Design Decisions:
    - Used by service tests and local runs without a database; the
      concurrency properties of reservation are exercised against these
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID, uuid4

from boxoffice.core.domain_types import OrderStatus, SortOrder, TicketStatus
from boxoffice.core.errors import (
    ConstraintViolationError, InvalidSelectionError, ResourceNotFoundError,
)
from boxoffice.core.pagination import CursorOptions, seeks_after
from boxoffice.core.records import (
    EventRecord, OrderRecord, TicketRecord, TicketTypeSnapshot,
)


class InMemoryStore:
    """Shared tables for one in-memory database."""

    def __init__(self):
        self.events: dict[UUID, EventRecord] = {}
        self.ticket_types: dict[UUID, TicketTypeSnapshot] = {}
        self.orders: dict[UUID, OrderRecord] = {}
        self.tickets: dict[UUID, TicketRecord] = {}
        self.webhook_events: dict[str, datetime] = {}
        self.inventory_lock = asyncio.Lock()

    def add_event(
        self, name: str, starts_at: datetime, ends_at: datetime | None = None,
    ) -> EventRecord:
        event = EventRecord(id=uuid4(), name=name, starts_at=starts_at, ends_at=ends_at)
        self.events[event.id] = event
        return event

    def add_ticket_type(
        self,
        event_id: UUID,
        name: str,
        price: Decimal,
        fee: Decimal = Decimal("0"),
        total_inventory: int | None = None,
        tickets_sold: int = 0,
    ) -> TicketTypeSnapshot:
        ticket_type = TicketTypeSnapshot(
            id=uuid4(),
            event_id=event_id,
            name=name,
            unit_price=price,
            unit_fee=fee,
            total_inventory=total_inventory,
            tickets_sold=tickets_sold,
        )
        self.ticket_types[ticket_type.id] = ticket_type
        return ticket_type


# ─── Inventory ───────────────────────────────────────────────────

class _MemoryInventoryUnitOfWork:
    def __init__(self, store: InMemoryStore):
        self._store = store
        self.journal: list[tuple[UUID, int]] = []

    async def describe(self, ticket_type_id: UUID) -> TicketTypeSnapshot | None:
        await asyncio.sleep(0)
        return self._store.ticket_types.get(ticket_type_id)

    async def try_increment(
        self, event_id: UUID, ticket_type_id: UUID, quantity: int,
    ) -> bool:
        current = self._store.ticket_types.get(ticket_type_id)
        await asyncio.sleep(0)
        if current is None or current.event_id != event_id:
            return False
        sold = current.tickets_sold + quantity
        if current.total_inventory is not None and sold > current.total_inventory:
            return False
        self._apply(ticket_type_id, quantity)
        return True

    async def decrement(self, ticket_type_id: UUID, quantity: int) -> None:
        current = self._store.ticket_types.get(ticket_type_id)
        await asyncio.sleep(0)
        if current is None:
            return
        self._apply(ticket_type_id, -min(quantity, current.tickets_sold))

    def _apply(self, ticket_type_id: UUID, delta: int) -> None:
        current = self._store.ticket_types[ticket_type_id]
        sold = current.tickets_sold + delta
        if sold < 0 or (
            current.total_inventory is not None and sold > current.total_inventory
        ):
            raise ConstraintViolationError("ck_ticket_types_inventory")
        self._store.ticket_types[ticket_type_id] = replace(current, tickets_sold=sold)
        self.journal.append((ticket_type_id, delta))

    def rollback(self) -> None:
        for ticket_type_id, delta in reversed(self.journal):
            current = self._store.ticket_types[ticket_type_id]
            self._store.ticket_types[ticket_type_id] = replace(
                current, tickets_sold=current.tickets_sold - delta,
            )
        self.journal.clear()


class InMemoryInventoryRepository:
    def __init__(self, store: InMemoryStore):
        self._store = store

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[_MemoryInventoryUnitOfWork, None]:
        async with self._store.inventory_lock:
            uow = _MemoryInventoryUnitOfWork(self._store)
            try:
                yield uow
            except BaseException:
                uow.rollback()
                raise


# ─── Events / Orders ─────────────────────────────────────────────

class InMemoryEventRepository:
    def __init__(self, store: InMemoryStore):
        self._store = store

    async def get(self, event_id: UUID) -> EventRecord | None:
        await asyncio.sleep(0)
        return self._store.events.get(event_id)


class InMemoryOrderRepository:
    def __init__(self, store: InMemoryStore):
        self._store = store

    async def add(self, order: OrderRecord) -> None:
        await asyncio.sleep(0)
        if order.id in self._store.orders:
            raise ConstraintViolationError("orders.pkey")
        self._check_payment_id(order.id, order.payment_id)
        self._store.orders[order.id] = order

    async def get(self, order_id: UUID) -> OrderRecord | None:
        await asyncio.sleep(0)
        return self._store.orders.get(order_id)

    async def transition(
        self,
        order_id: UUID,
        current: OrderStatus,
        target: OrderStatus,
        payment_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> bool:
        await asyncio.sleep(0)
        order = self._store.orders.get(order_id)
        if order is None or order.status != current:
            return False
        self._check_payment_id(order_id, payment_id)
        self._store.orders[order_id] = replace(
            order,
            status=target,
            payment_id=payment_id if payment_id is not None else order.payment_id,
            paid_at=paid_at if paid_at is not None else order.paid_at,
        )
        return True

    async def count(
        self, event_id: UUID | None = None, status: OrderStatus | None = None,
    ) -> int:
        await asyncio.sleep(0)
        return len(self._filtered(event_id, status))

    async def list_page(
        self,
        offset: int,
        limit: int,
        event_id: UUID | None = None,
        status: OrderStatus | None = None,
        sort_order: SortOrder = SortOrder.DESC,
    ) -> list[OrderRecord]:
        await asyncio.sleep(0)
        rows = sorted(
            self._filtered(event_id, status),
            key=lambda o: (o.created_at, o.id),
            reverse=sort_order == SortOrder.DESC,
        )
        return rows[offset:offset + limit]

    def _filtered(
        self, event_id: UUID | None, status: OrderStatus | None,
    ) -> list[OrderRecord]:
        return [
            o for o in self._store.orders.values()
            if (event_id is None or o.event_id == event_id)
            and (status is None or o.status == status)
        ]

    def _check_payment_id(self, order_id: UUID, payment_id: str | None) -> None:
        if payment_id is None:
            return
        for other in self._store.orders.values():
            if other.id != order_id and other.payment_id == payment_id:
                raise ConstraintViolationError("orders.payment_id")


# ─── Tickets ─────────────────────────────────────────────────────

class InMemoryTicketRepository:
    def __init__(self, store: InMemoryStore):
        self._store = store

    async def add(self, ticket: TicketRecord) -> None:
        await asyncio.sleep(0)
        if any(t.qr_token == ticket.qr_token for t in self._store.tickets.values()):
            raise ConstraintViolationError("tickets.qr_token", retryable=True)
        self._store.tickets[ticket.id] = ticket

    async def get_by_token(self, qr_token: str) -> TicketRecord | None:
        await asyncio.sleep(0)
        for ticket in self._store.tickets.values():
            if ticket.qr_token == qr_token:
                return ticket
        return None

    async def mark_scanned(
        self, ticket_id: UUID, scanned_at: datetime, scanned_by: str | None,
    ) -> bool:
        await asyncio.sleep(0)
        ticket = self._store.tickets.get(ticket_id)
        if ticket is None or ticket.status != TicketStatus.ISSUED:
            return False
        self._store.tickets[ticket_id] = replace(
            ticket,
            status=TicketStatus.SCANNED,
            scanned_at=scanned_at,
            scanned_by=scanned_by,
        )
        return True

    async def void_for_order(self, order_id: UUID, voided_at: datetime) -> int:
        await asyncio.sleep(0)
        voided = 0
        for ticket in list(self._store.tickets.values()):
            if ticket.order_id == order_id and ticket.status != TicketStatus.VOIDED:
                self._store.tickets[ticket.id] = replace(
                    ticket, status=TicketStatus.VOIDED, voided_at=voided_at,
                )
                voided += 1
        return voided

    async def list_for_order(self, order_id: UUID) -> list[TicketRecord]:
        await asyncio.sleep(0)
        return sorted(
            (t for t in self._store.tickets.values() if t.order_id == order_id),
            key=lambda t: (t.issued_at, t.id),
        )

    async def list_cursor(
        self, options: CursorOptions, event_id: UUID | None = None,
    ) -> list[TicketRecord]:
        await asyncio.sleep(0)
        after = seeks_after(options)
        rows = [
            t for t in self._store.tickets.values()
            if event_id is None or t.event_id == event_id
        ]
        rows.sort(key=lambda t: (t.issued_at, t.id), reverse=not after)
        if options.cursor:
            anchor = self._anchor(options.cursor)
            key = (anchor.issued_at, anchor.id)
            if after:
                rows = [t for t in rows if (t.issued_at, t.id) > key]
            else:
                rows = [t for t in rows if (t.issued_at, t.id) < key]
        return rows[: options.fetch_limit]

    def _anchor(self, cursor: str) -> TicketRecord:
        try:
            cursor_id = UUID(cursor)
        except ValueError:
            raise InvalidSelectionError("Malformed cursor", "cursor")
        anchor = self._store.tickets.get(cursor_id)
        if anchor is None:
            raise ResourceNotFoundError("Ticket", cursor)
        return anchor


# ─── Replay Store ────────────────────────────────────────────────

class InMemoryReplayStore:
    def __init__(self, store: InMemoryStore):
        self._store = store

    async def record(
        self,
        signature_hash: str,
        event_type: str,
        source_ip: str | None,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        await asyncio.sleep(0)
        held_until = self._store.webhook_events.get(signature_hash)
        if held_until is not None and held_until > now:
            return False
        self._store.webhook_events[signature_hash] = expires_at
        return True

    async def purge_expired(self, now: datetime) -> int:
        await asyncio.sleep(0)
        expired = [h for h, until in self._store.webhook_events.items() if until <= now]
        for signature_hash in expired:
            del self._store.webhook_events[signature_hash]
        return len(expired)

    async def forget(self, signature_hash: str) -> None:
        await asyncio.sleep(0)
        self._store.webhook_events.pop(signature_hash, None)
