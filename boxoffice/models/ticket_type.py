"""TicketType ORM - a priced tier of an event with finite or unlimited capacity.

Invariants:
    - Always belongs to an Event (event_id FK)
    - total_inventory NULL means unlimited
    - tickets_sold >= 0 and, when capped, tickets_sold <= total_inventory
      (enforced by ck_ticket_types_inventory)
    - tickets_sold changes only through reservation and its release

Design Decisions:
    - Counter column over counting ticket rows: the conditional UPDATE on one
      row is the reservation, and the row lock is the serialization point
    - Check constraint as the last line of defence against an oversell
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    String, Integer, Numeric, DateTime, ForeignKey, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID

from boxoffice.db.base import Base

INVENTORY_CHECK = "ck_ticket_types_inventory"


class TicketType(Base):
    """Ticket tier with capacity accounting."""
    __tablename__ = "ticket_types"
    __table_args__ = (
        CheckConstraint(
            "tickets_sold >= 0 AND "
            "(total_inventory IS NULL OR tickets_sold <= total_inventory)",
            name=INVENTORY_CHECK,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("events.id"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0"),
    )
    fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0"),
    )
    total_inventory: Mapped[int | None] = mapped_column(
        Integer, nullable=True,
    )
    tickets_sold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    event: Mapped["Event"] = relationship("Event", back_populates="ticket_types")
