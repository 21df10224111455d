"""WebhookEvent ORM - replay-protection store for payment webhooks.

Invariants:
    - signature_hash is UNIQUE: one row per distinct delivery signature
    - A row blocks repeats only until expires_at

Design Decisions:
    - Hash of the signature, not the raw header: fixed width, nothing reusable stored
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from boxoffice.db.base import Base


class WebhookEvent(Base):
    """Processed webhook delivery."""
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    signature_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True,
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
