"""Domain Types - rich types that replace bare primitives across the codebase.

Invariants:
    - EventId, TicketTypeId, OrderId, TicketId wrap UUIDs
    - All valid states encoded as Enums, never raw string matching
    - Status enums are str Enums so values land in DB columns unchanged

Design Decisions:
    - NewType over dataclass wrappers: zero runtime cost, full type-checker support
"""

from enum import Enum
from typing import NewType
from uuid import UUID


# ─── Identity Types ──────────────────────────────────────────────

EventId = NewType("EventId", UUID)
TicketTypeId = NewType("TicketTypeId", UUID)
OrderId = NewType("OrderId", UUID)
TicketId = NewType("TicketId", UUID)


# ─── Enums ───────────────────────────────────────────────────────

class OrderStatus(str, Enum):
    """Order lifecycle states - maps to orders.status."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class TicketStatus(str, Enum):
    """Ticket lifecycle states - maps to tickets.status. Forward-only."""
    ISSUED = "issued"
    SCANNED = "scanned"
    VOIDED = "voided"


class ScanOutcome(str, Enum):
    """Distinct outcomes reported to gate scanners."""
    VALID = "valid"
    INVALID_SIGNATURE = "invalid_signature"
    NOT_FOUND = "not_found"
    ALREADY_SCANNED = "already_scanned"
    VOIDED = "voided"
    EXPIRED = "expired"


class DiscountType(str, Enum):
    """Promo code discount flavours."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CursorDirection(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


# Allowed status moves; anything else raises InvalidTransitionError.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TICKET_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.ISSUED: frozenset({TicketStatus.SCANNED, TicketStatus.VOIDED}),
    TicketStatus.SCANNED: frozenset({TicketStatus.VOIDED}),
    TicketStatus.VOIDED: frozenset(),
}
