"""Records - immutable snapshots exchanged between services and repositories.

Invariants:
    - Records never hold an ORM session or lazy attribute
    - Money fields are Decimal, timestamps are timezone-aware UTC
    - Changing a record means replacing it (dataclasses.replace)

Design Decisions:
    - Frozen dataclasses over ORM objects at the boundary: the in-memory and
      SQL repositories return the same shapes, services never see SQLAlchemy
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from boxoffice.core.domain_types import OrderStatus, TicketStatus
from boxoffice.core.order_math import LineItem


@dataclass(frozen=True)
class EventRecord:
    id: UUID
    name: str
    starts_at: datetime
    ends_at: datetime | None = None


@dataclass(frozen=True)
class TicketTypeSnapshot:
    """Inventory view of one ticket type at read time."""
    id: UUID
    event_id: UUID
    name: str
    unit_price: Decimal
    unit_fee: Decimal
    total_inventory: int | None
    tickets_sold: int

    @property
    def available(self) -> int | None:
        """Remaining capacity, None when unlimited."""
        if self.total_inventory is None:
            return None
        return max(0, self.total_inventory - self.tickets_sold)


@dataclass(frozen=True)
class OrderRecord:
    id: UUID
    event_id: UUID
    purchaser_email: str
    purchaser_name: str | None
    line_items: list[LineItem]
    subtotal: Decimal
    discount: Decimal
    fees: Decimal
    total: Decimal
    status: OrderStatus
    created_at: datetime
    promo_code: str | None = None
    payment_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    paid_at: datetime | None = None


@dataclass(frozen=True)
class TicketRecord:
    id: UUID
    order_id: UUID
    ticket_type_id: UUID
    event_id: UUID
    qr_token: str
    qr_signature: str
    ticket_code: str
    status: TicketStatus
    price: Decimal
    fee: Decimal
    issued_at: datetime
    attendee_name: str | None = None
    attendee_email: str | None = None
    scanned_at: datetime | None = None
    scanned_by: str | None = None
    voided_at: datetime | None = None
