"""SQL Repositories - SQLAlchemy implementations of the storage Protocols.

Invariants:
    - Every method runs in its own session from DatabaseSessionManager,
      so errors arrive as ConstraintViolationError / DatabaseError
    - Reservation is one conditional UPDATE per ticket type inside one
      transaction; the row lock it takes serializes concurrent buyers
    - Scans and order transitions are compare-and-set UPDATEs on status
    - Returned values are core/records.py snapshots with UTC-aware timestamps

Design Decisions:
    - Core UPDATE statements with synchronize_session=False: no identity map
      to keep in sync, rowcount is the answer
    - Cursor pagination is keyset over (issued_at, id); the cursor is the id
      of a ticket, resolved to its issued_at on each read
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator
from uuid import UUID

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.core.domain_types import (
    OrderStatus, SortOrder, TicketStatus,
)
from boxoffice.core.errors import (
    ConstraintViolationError, InvalidSelectionError, ResourceNotFoundError,
)
from boxoffice.core.order_math import LineItem
from boxoffice.core.pagination import CursorOptions, seeks_after
from boxoffice.core.records import (
    EventRecord, OrderRecord, TicketRecord, TicketTypeSnapshot,
)
from boxoffice.infrastructure.database import DatabaseSessionManager
from boxoffice.models.event import Event
from boxoffice.models.order import Order
from boxoffice.models.ticket import Ticket
from boxoffice.models.ticket_type import TicketType
from boxoffice.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


def _utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ─── Inventory ───────────────────────────────────────────────────

class _SqlInventoryUnitOfWork:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def describe(self, ticket_type_id: UUID) -> TicketTypeSnapshot | None:
        result = await self._session.execute(
            select(TicketType).where(TicketType.id == ticket_type_id),
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return TicketTypeSnapshot(
            id=row.id,
            event_id=row.event_id,
            name=row.name,
            unit_price=row.price,
            unit_fee=row.fee,
            total_inventory=row.total_inventory,
            tickets_sold=row.tickets_sold,
        )

    async def try_increment(
        self, event_id: UUID, ticket_type_id: UUID, quantity: int,
    ) -> bool:
        stmt = (
            update(TicketType)
            .where(
                TicketType.id == ticket_type_id,
                TicketType.event_id == event_id,
                or_(
                    TicketType.total_inventory.is_(None),
                    TicketType.tickets_sold + quantity <= TicketType.total_inventory,
                ),
            )
            .values(tickets_sold=TicketType.tickets_sold + quantity)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def decrement(self, ticket_type_id: UUID, quantity: int) -> None:
        stmt = (
            update(TicketType)
            .where(TicketType.id == ticket_type_id)
            .values(tickets_sold=case(
                (TicketType.tickets_sold >= quantity, TicketType.tickets_sold - quantity),
                else_=0,
            ))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


class SqlInventoryRepository:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[_SqlInventoryUnitOfWork, None]:
        """Commit on clean exit; any exception rolls back every increment."""
        async with self._db.session() as session:
            async with session.begin():
                yield _SqlInventoryUnitOfWork(session)


# ─── Events ──────────────────────────────────────────────────────

class SqlEventRepository:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def get(self, event_id: UUID) -> EventRecord | None:
        async with self._db.session() as session:
            row = await session.get(Event, event_id)
            if row is None:
                return None
            return EventRecord(
                id=row.id,
                name=row.name,
                starts_at=_utc(row.starts_at),
                ends_at=_utc(row.ends_at),
            )


# ─── Orders ──────────────────────────────────────────────────────

def _order_record(row: Order) -> OrderRecord:
    return OrderRecord(
        id=row.id,
        event_id=row.event_id,
        purchaser_email=row.purchaser_email,
        purchaser_name=row.purchaser_name,
        line_items=[LineItem.from_dict(li) for li in row.line_items or []],
        subtotal=row.subtotal,
        discount=row.discount,
        fees=row.fees,
        total=row.total,
        status=OrderStatus(row.status),
        created_at=_utc(row.created_at),
        promo_code=row.promo_code,
        payment_id=row.payment_id,
        metadata=dict(row.order_metadata or {}),
        paid_at=_utc(row.paid_at),
    )


class SqlOrderRepository:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def add(self, order: OrderRecord) -> None:
        async with self._db.session() as session:
            session.add(Order(
                id=order.id,
                event_id=order.event_id,
                purchaser_email=order.purchaser_email,
                purchaser_name=order.purchaser_name,
                line_items=[li.to_dict() for li in order.line_items],
                subtotal=order.subtotal,
                discount=order.discount,
                fees=order.fees,
                total=order.total,
                promo_code=order.promo_code,
                status=order.status.value,
                payment_id=order.payment_id,
                order_metadata=order.metadata,
                created_at=order.created_at,
                paid_at=order.paid_at,
            ))
            await session.commit()

    async def get(self, order_id: UUID) -> OrderRecord | None:
        async with self._db.session() as session:
            row = await session.get(Order, order_id)
            return _order_record(row) if row is not None else None

    async def transition(
        self,
        order_id: UUID,
        current: OrderStatus,
        target: OrderStatus,
        payment_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> bool:
        values: dict = {"status": target.value}
        if payment_id is not None:
            values["payment_id"] = payment_id
        if paid_at is not None:
            values["paid_at"] = paid_at
        async with self._db.session() as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == current.value)
                .values(**values)
                .execution_options(synchronize_session=False),
            )
            await session.commit()
            return result.rowcount == 1

    async def count(
        self, event_id: UUID | None = None, status: OrderStatus | None = None,
    ) -> int:
        query = select(func.count()).select_from(Order)
        query = self._filtered(query, event_id, status)
        async with self._db.session() as session:
            return (await session.execute(query)).scalar_one()

    async def list_page(
        self,
        offset: int,
        limit: int,
        event_id: UUID | None = None,
        status: OrderStatus | None = None,
        sort_order: SortOrder = SortOrder.DESC,
    ) -> list[OrderRecord]:
        if sort_order == SortOrder.ASC:
            ordering = (Order.created_at.asc(), Order.id.asc())
        else:
            ordering = (Order.created_at.desc(), Order.id.desc())
        query = self._filtered(select(Order), event_id, status)
        query = query.order_by(*ordering).offset(offset).limit(limit)
        async with self._db.session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_order_record(r) for r in rows]

    @staticmethod
    def _filtered(query, event_id: UUID | None, status: OrderStatus | None):
        if event_id is not None:
            query = query.where(Order.event_id == event_id)
        if status is not None:
            query = query.where(Order.status == status.value)
        return query


# ─── Tickets ─────────────────────────────────────────────────────

def _ticket_record(row: Ticket) -> TicketRecord:
    return TicketRecord(
        id=row.id,
        order_id=row.order_id,
        ticket_type_id=row.ticket_type_id,
        event_id=row.event_id,
        qr_token=row.qr_token,
        qr_signature=row.qr_signature,
        ticket_code=row.ticket_code,
        status=TicketStatus(row.status),
        price=row.price,
        fee=row.fee,
        issued_at=_utc(row.issued_at),
        attendee_name=row.attendee_name,
        attendee_email=row.attendee_email,
        scanned_at=_utc(row.scanned_at),
        scanned_by=row.scanned_by,
        voided_at=_utc(row.voided_at),
    )


class SqlTicketRepository:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def add(self, ticket: TicketRecord) -> None:
        async with self._db.session() as session:
            session.add(Ticket(
                id=ticket.id,
                order_id=ticket.order_id,
                ticket_type_id=ticket.ticket_type_id,
                event_id=ticket.event_id,
                qr_token=ticket.qr_token,
                qr_signature=ticket.qr_signature,
                ticket_code=ticket.ticket_code,
                status=ticket.status.value,
                attendee_name=ticket.attendee_name,
                attendee_email=ticket.attendee_email,
                price=ticket.price,
                fee=ticket.fee,
                issued_at=ticket.issued_at,
            ))
            try:
                await session.commit()
            except IntegrityError as e:
                if "qr_token" in str(e.orig):
                    raise ConstraintViolationError("tickets.qr_token", retryable=True)
                raise

    async def get_by_token(self, qr_token: str) -> TicketRecord | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(Ticket).where(Ticket.qr_token == qr_token),
            )
            row = result.scalar_one_or_none()
            return _ticket_record(row) if row is not None else None

    async def mark_scanned(
        self, ticket_id: UUID, scanned_at: datetime, scanned_by: str | None,
    ) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                update(Ticket)
                .where(
                    Ticket.id == ticket_id,
                    Ticket.status == TicketStatus.ISSUED.value,
                )
                .values(
                    status=TicketStatus.SCANNED.value,
                    scanned_at=scanned_at,
                    scanned_by=scanned_by,
                )
                .execution_options(synchronize_session=False),
            )
            await session.commit()
            return result.rowcount == 1

    async def void_for_order(self, order_id: UUID, voided_at: datetime) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                update(Ticket)
                .where(
                    Ticket.order_id == order_id,
                    Ticket.status != TicketStatus.VOIDED.value,
                )
                .values(status=TicketStatus.VOIDED.value, voided_at=voided_at)
                .execution_options(synchronize_session=False),
            )
            await session.commit()
            return result.rowcount

    async def list_for_order(self, order_id: UUID) -> list[TicketRecord]:
        async with self._db.session() as session:
            result = await session.execute(
                select(Ticket)
                .where(Ticket.order_id == order_id)
                .order_by(Ticket.issued_at.asc(), Ticket.id.asc()),
            )
            return [_ticket_record(r) for r in result.scalars().all()]

    async def list_cursor(
        self, options: CursorOptions, event_id: UUID | None = None,
    ) -> list[TicketRecord]:
        """Up to options.fetch_limit tickets past the cursor, nearest first."""
        after = seeks_after(options)
        query = select(Ticket)
        if event_id is not None:
            query = query.where(Ticket.event_id == event_id)

        async with self._db.session() as session:
            if options.cursor:
                anchor = await self._anchor(session, options.cursor)
                if after:
                    query = query.where(or_(
                        Ticket.issued_at > anchor.issued_at,
                        and_(Ticket.issued_at == anchor.issued_at, Ticket.id > anchor.id),
                    ))
                else:
                    query = query.where(or_(
                        Ticket.issued_at < anchor.issued_at,
                        and_(Ticket.issued_at == anchor.issued_at, Ticket.id < anchor.id),
                    ))
            if after:
                query = query.order_by(Ticket.issued_at.asc(), Ticket.id.asc())
            else:
                query = query.order_by(Ticket.issued_at.desc(), Ticket.id.desc())
            result = await session.execute(query.limit(options.fetch_limit))
            return [_ticket_record(r) for r in result.scalars().all()]

    @staticmethod
    async def _anchor(session: AsyncSession, cursor: str) -> Ticket:
        try:
            cursor_id = UUID(cursor)
        except ValueError:
            raise InvalidSelectionError("Malformed cursor", "cursor")
        anchor = await session.get(Ticket, cursor_id)
        if anchor is None:
            raise ResourceNotFoundError("Ticket", cursor)
        return anchor


# ─── Replay Store ────────────────────────────────────────────────

class SqlReplayStore:
    def __init__(self, db: DatabaseSessionManager):
        self._db = db

    async def record(
        self,
        signature_hash: str,
        event_type: str,
        source_ip: str | None,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                select(WebhookEvent).where(
                    WebhookEvent.signature_hash == signature_hash,
                ),
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                if _utc(existing.expires_at) > now:
                    return False
                existing.event_type = event_type
                existing.source_ip = source_ip
                existing.expires_at = expires_at
                existing.created_at = now
                await session.commit()
                return True

            session.add(WebhookEvent(
                signature_hash=signature_hash,
                event_type=event_type,
                source_ip=source_ip,
                expires_at=expires_at,
                created_at=now,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent delivery of the same signature won the insert.
                await session.rollback()
                return False
            return True

    async def purge_expired(self, now: datetime) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                delete(WebhookEvent).where(WebhookEvent.expires_at <= now),
            )
            await session.commit()
            if result.rowcount:
                logger.info(f"Purged {result.rowcount} expired webhook events")
            return result.rowcount

    async def forget(self, signature_hash: str) -> None:
        async with self._db.session() as session:
            await session.execute(
                delete(WebhookEvent).where(WebhookEvent.signature_hash == signature_hash),
            )
            await session.commit()
