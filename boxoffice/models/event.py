"""Event ORM - a dated occasion that owns ticket types.

Invariants:
    - id is UUID primary key
    - ends_at is optional; when set, tickets stop scanning after it

Design Decisions:
    - No content/branding columns: those live in the storefront, this table
      only carries what reservation and scanning need
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID

from boxoffice.db.base import Base


class Event(Base):
    """Event entity - parent of ticket types, orders and tickets."""
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    ticket_types: Mapped[list["TicketType"]] = relationship(
        "TicketType", back_populates="event", lazy="selectin",
    )
