"""Boundary Protocols - contracts between core services and storage.

Invariants:
    - Services NEVER import SQLAlchemy - dependency arrows point inward only
    - All IO operations accessed through Protocol types
    - Inventory writes happen only inside an InventoryUnitOfWork: clean exit
      commits, any exception rolls every increment of the unit back
    - Conditional writes (try_increment, transition, mark_scanned) report
      whether they applied instead of raising on a lost race

Design Decisions:
    - Protocol over ABC: structural subtyping, SQL and in-memory repositories
      share no base class
    - Narrow verbs over a generic query builder: each method maps to one
      statement the storage layer can make atomic
"""

from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol

from boxoffice.core.domain_types import (
    EventId, OrderId, OrderStatus, SortOrder, TicketId, TicketTypeId,
)
from boxoffice.core.pagination import CursorOptions
from boxoffice.core.records import (
    EventRecord, OrderRecord, TicketRecord, TicketTypeSnapshot,
)


class InventoryUnitOfWork(Protocol):
    """One atomic batch of inventory changes."""
    async def describe(self, ticket_type_id: TicketTypeId) -> TicketTypeSnapshot | None: ...
    async def try_increment(
        self, event_id: EventId, ticket_type_id: TicketTypeId, quantity: int,
    ) -> bool: ...
    async def decrement(self, ticket_type_id: TicketTypeId, quantity: int) -> None: ...


class InventoryRepository(Protocol):
    """Contract for ticket-type capacity - implemented by infrastructure."""
    def unit_of_work(self) -> AbstractAsyncContextManager[InventoryUnitOfWork]: ...


class EventRepository(Protocol):
    async def get(self, event_id: EventId) -> EventRecord | None: ...


class OrderRepository(Protocol):
    """Contract for order persistence.

    add() raises ConstraintViolationError when payment_id is not unique.
    """
    async def add(self, order: OrderRecord) -> None: ...
    async def get(self, order_id: OrderId) -> OrderRecord | None: ...
    async def transition(
        self,
        order_id: OrderId,
        current: OrderStatus,
        target: OrderStatus,
        payment_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> bool: ...
    async def count(
        self, event_id: EventId | None = None, status: OrderStatus | None = None,
    ) -> int: ...
    async def list_page(
        self,
        offset: int,
        limit: int,
        event_id: EventId | None = None,
        status: OrderStatus | None = None,
        sort_order: SortOrder = SortOrder.DESC,
    ) -> list[OrderRecord]: ...


class TicketRepository(Protocol):
    """Contract for ticket persistence.

    add() raises ConstraintViolationError(retryable=True) on a qr_token collision.
    """
    async def add(self, ticket: TicketRecord) -> None: ...
    async def get_by_token(self, qr_token: str) -> TicketRecord | None: ...
    async def mark_scanned(
        self, ticket_id: TicketId, scanned_at: datetime, scanned_by: str | None,
    ) -> bool: ...
    async def void_for_order(self, order_id: OrderId, voided_at: datetime) -> int: ...
    async def list_for_order(self, order_id: OrderId) -> list[TicketRecord]: ...
    async def list_cursor(
        self, options: CursorOptions, event_id: EventId | None = None,
    ) -> list[TicketRecord]: ...


class ReplayStore(Protocol):
    """Signature hashes of processed webhooks, each with an expiry.

    record() returns False when the hash is already held and not yet expired.
    forget() drops a hash so a delivery that failed mid-way can be redelivered.
    """
    async def record(
        self,
        signature_hash: str,
        event_type: str,
        source_ip: str | None,
        expires_at: datetime,
        now: datetime,
    ) -> bool: ...
    async def purge_expired(self, now: datetime) -> int: ...
    async def forget(self, signature_hash: str) -> None: ...
