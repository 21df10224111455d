"""Ticket Schemas - scan requests, scan results and ticket listings.

Invariants:
    - Scan requests carry both token and signature; either may be empty, the
      issuer reports that as invalid_signature rather than a 400
    - Responses never include the signature of a ticket
    - Manually typed credentials (entry_method="manual") are limited by a
      stricter policy than camera scans

Design Decisions:
    - Scan outcome returned with HTTP 200 for every outcome: a rejected ticket
      is a normal answer for the gate, not a request error
"""

from datetime import datetime
from typing import Literal
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from boxoffice.core.records import TicketRecord


class ScanRequest(BaseModel):
    token: str = Field("", max_length=64)
    signature: str = Field("", max_length=128)
    scanner_id: str | None = Field(None, max_length=100)
    entry_method: Literal["qr", "manual"] = "qr"


class TicketOut(BaseModel):
    id: UUID
    order_id: UUID
    ticket_type_id: UUID
    event_id: UUID
    ticket_code: str
    status: str
    attendee_name: str | None
    price: Decimal
    fee: Decimal
    issued_at: datetime
    scanned_at: datetime | None
    voided_at: datetime | None

    @classmethod
    def from_record(cls, ticket: TicketRecord) -> "TicketOut":
        return cls(
            id=ticket.id,
            order_id=ticket.order_id,
            ticket_type_id=ticket.ticket_type_id,
            event_id=ticket.event_id,
            ticket_code=ticket.ticket_code,
            status=ticket.status.value,
            attendee_name=ticket.attendee_name,
            price=ticket.price,
            fee=ticket.fee,
            issued_at=ticket.issued_at,
            scanned_at=ticket.scanned_at,
            voided_at=ticket.voided_at,
        )


class ScanResponse(BaseModel):
    outcome: str
    valid: bool
    message: str
    ticket: TicketOut | None = None
