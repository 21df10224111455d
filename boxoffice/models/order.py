"""Order ORM - one checkout: purchaser, priced line items, payment state.

Invariants:
    - Created pending; status moves per ORDER_TRANSITIONS only
    - payment_id is UNIQUE when set: one provider payment finalizes one order
    - line_items is a JSON snapshot of LineItem.to_dict() at checkout time

Design Decisions:
    - JSON line items over a join table: an order's lines never change after
      creation and are always read together
    - "metadata" is reserved on declarative classes, so the attribute is
      order_metadata mapped onto a "metadata" column
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import String, Numeric, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from boxoffice.db.base import Base


class Order(Base):
    """Order entity - pending until the payment webhook confirms it."""
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_event_status", "event_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("events.id"), nullable=False,
    )
    purchaser_email: Mapped[str] = mapped_column(String(320), nullable=False)
    purchaser_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0"),
    )
    fees: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    promo_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending",
    )
    payment_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True,
    )
    order_metadata: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=False, default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
