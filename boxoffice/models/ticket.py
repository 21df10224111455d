"""Ticket ORM - one admission credential, minted per reserved unit.

Invariants:
    - Belongs to exactly one Order and one TicketType
    - qr_token is UNIQUE; qr_signature = HMAC-SHA256(secret, qr_token)
    - status moves forward only: issued -> scanned, issued/scanned -> voided
    - Rows are never deleted (audit trail)

Design Decisions:
    - event_id denormalized: scan-time expiry check and admin listing need no join
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import String, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from boxoffice.db.base import Base


class Ticket(Base):
    """Ticket entity - a signed, scannable credential."""
    __tablename__ = "tickets"
    __table_args__ = (
        Index("ix_tickets_issued_at_id", "issued_at", "id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True,
    )
    ticket_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ticket_types.id"), nullable=False,
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("events.id"), nullable=False, index=True,
    )
    qr_token: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True,
    )
    qr_signature: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_code: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="issued",
    )
    attendee_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    attendee_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    scanned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    scanned_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
