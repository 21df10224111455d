"""Ticket Issuer - mints, verifies, scans and voids signed ticket credentials.

Invariants:
    - One ticket per reserved unit, minted sequentially within an order;
      units the order already holds are never minted twice
    - qr_signature = hex(HMAC-SHA256(secret, qr_token)) for every ticket
    - A qr_token collision retries with a fresh token, up to max_token_attempts;
      a ticket is never overwritten
    - validate() never silently accepts: mismatch or empty input raises
    - A scan reports exactly one outcome; of two simultaneous scans of one
      ticket exactly one is VALID (conditional issued -> scanned update)
    - Signature is checked before any storage read

Design Decisions:
    - Price/fee on a ticket are the unit list price from the reservation;
      promo discounts stay on the order
    - Expiry comes from the event's ends_at, looked up at scan time
"""

import logging
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from boxoffice.core.domain_types import ScanOutcome, TicketStatus
from boxoffice.core.errors import (
    ConstraintViolationError, ErrorContext, SignatureMismatchError,
)
from boxoffice.core.records import OrderRecord, TicketRecord
from boxoffice.core.repository_protocols import EventRepository, TicketRepository
from boxoffice.core.ticket_signing import (
    generate_ticket_code, generate_token, redact, sign_token, verify_token,
)
from boxoffice.services.inventory import Reservation
from boxoffice.services.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKEN_ATTEMPTS = 5

_SCAN_MESSAGES = {
    ScanOutcome.VALID: "Ticket accepted",
    ScanOutcome.INVALID_SIGNATURE: "Ticket signature is invalid",
    ScanOutcome.NOT_FOUND: "Ticket not found",
    ScanOutcome.ALREADY_SCANNED: "Ticket was already scanned",
    ScanOutcome.VOIDED: "Ticket has been voided",
    ScanOutcome.EXPIRED: "Event has ended",
}


@dataclass(frozen=True)
class ScanResult:
    outcome: ScanOutcome
    ticket: TicketRecord | None = None

    @property
    def valid(self) -> bool:
        return self.outcome == ScanOutcome.VALID

    @property
    def message(self) -> str:
        return _SCAN_MESSAGES[self.outcome]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketIssuer:
    """Owns the ticket signing secret."""

    def __init__(
        self,
        tickets: TicketRepository,
        events: EventRepository,
        secret: str,
        metrics: MetricsRegistry | None = None,
        max_token_attempts: int = DEFAULT_MAX_TOKEN_ATTEMPTS,
        token_factory: Callable[[], str] = generate_token,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not secret:
            raise ValueError("Ticket signing secret must not be empty")
        self._tickets = tickets
        self._events = events
        self._secret = secret
        self._metrics = metrics
        self._max_attempts = max(1, max_token_attempts)
        self._token_factory = token_factory
        self._clock = clock

    # ─── Issuance ────────────────────────────────────────────────

    async def issue(
        self, order: OrderRecord, reservation: Reservation,
    ) -> list[TicketRecord]:
        """Persist one signed ticket per reserved unit the order does not hold yet.

        Units already minted for the order are skipped, so calling issue()
        again after an interrupted run mints only what is missing. Returns
        every ticket of the order, earlier ones first.
        """
        existing = await self._tickets.list_for_order(order.id)
        held = Counter(str(t.ticket_type_id) for t in existing)
        issued: list[TicketRecord] = []
        for item in reservation.items:
            key = str(item.ticket_type_id)
            skip = min(held[key], item.quantity)
            held[key] -= skip
            for _ in range(item.quantity - skip):
                ticket = await self._issue_one(
                    order, item.ticket_type_id, item.unit_price, item.unit_fee,
                )
                issued.append(ticket)
        if existing:
            logger.info(
                f"Resumed issuance: {len(issued)} minted, {len(existing)} already held",
                extra={"order_id": str(order.id), "event_id": str(order.event_id)},
            )
        else:
            logger.info(
                f"Issued {len(issued)} tickets",
                extra={"order_id": str(order.id), "event_id": str(order.event_id)},
            )
        return existing + issued

    async def _issue_one(
        self, order: OrderRecord, ticket_type_id: UUID, price: Decimal, fee: Decimal,
    ) -> TicketRecord:
        for attempt in range(1, self._max_attempts + 1):
            token = self._token_factory()
            ticket = TicketRecord(
                id=uuid4(),
                order_id=order.id,
                ticket_type_id=ticket_type_id,
                event_id=order.event_id,
                qr_token=token,
                qr_signature=sign_token(self._secret, token),
                ticket_code=generate_ticket_code(str(order.event_id), str(order.id), self._clock()),
                status=TicketStatus.ISSUED,
                price=price,
                fee=fee,
                issued_at=self._clock(),
                attendee_name=order.purchaser_name,
                attendee_email=order.purchaser_email,
            )
            try:
                await self._tickets.add(ticket)
                return ticket
            except ConstraintViolationError as e:
                if not e.retryable or attempt == self._max_attempts:
                    logger.error(
                        f"Ticket token collision not resolved after {attempt} attempts",
                        extra={"order_id": str(order.id), "error_code": e.code},
                    )
                    raise
                logger.warning(
                    f"Ticket token collision on {redact(token)}, retrying "
                    f"({attempt}/{self._max_attempts})",
                    extra={"order_id": str(order.id)},
                )
        raise AssertionError("unreachable")

    async def tickets_for(self, order_id: UUID) -> list[TicketRecord]:
        return await self._tickets.list_for_order(order_id)

    # ─── Verification ────────────────────────────────────────────

    def is_valid(self, token: str, signature: str) -> bool:
        return verify_token(self._secret, token, signature)

    def validate(self, token: str, signature: str) -> None:
        """Raise SignatureMismatchError unless signature is the HMAC of token."""
        if not self.is_valid(token, signature):
            logger.warning(f"Ticket signature mismatch for {redact(token or '')}")
            raise SignatureMismatchError(
                "Ticket signature mismatch",
                ErrorContext(debug_info={"token": redact(token or "")}),
            )

    async def scan(
        self, token: str, signature: str, scanner_id: str | None = None,
    ) -> ScanResult:
        """Check a presented credential and admit it at most once."""
        started = time.perf_counter()
        result = await self._scan(token, signature, scanner_id)
        duration_ms = (time.perf_counter() - started) * 1000
        if self._metrics is not None:
            self._metrics.track_ticket_scan(duration_ms, result.outcome)
        log = logger.info if result.valid else logger.warning
        log(
            f"Scan {result.outcome.value} for {redact(token or '')}",
            extra={
                "outcome": result.outcome.value,
                "ticket_id": str(result.ticket.id) if result.ticket else None,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return result

    async def _scan(
        self, token: str, signature: str, scanner_id: str | None,
    ) -> ScanResult:
        if not self.is_valid(token, signature):
            return ScanResult(ScanOutcome.INVALID_SIGNATURE)

        ticket = await self._tickets.get_by_token(token)
        if ticket is None:
            return ScanResult(ScanOutcome.NOT_FOUND)
        if ticket.status == TicketStatus.VOIDED:
            return ScanResult(ScanOutcome.VOIDED, ticket)
        if ticket.status == TicketStatus.SCANNED:
            return ScanResult(ScanOutcome.ALREADY_SCANNED, ticket)

        now = self._clock()
        event = await self._events.get(ticket.event_id)
        if event is not None and event.ends_at is not None and event.ends_at <= now:
            return ScanResult(ScanOutcome.EXPIRED, ticket)

        if await self._tickets.mark_scanned(ticket.id, now, scanner_id):
            return ScanResult(ScanOutcome.VALID, replace(
                ticket, status=TicketStatus.SCANNED, scanned_at=now, scanned_by=scanner_id,
            ))

        # Lost the race: someone else scanned or voided it in between.
        current = await self._tickets.get_by_token(token) or ticket
        if current.status == TicketStatus.VOIDED:
            return ScanResult(ScanOutcome.VOIDED, current)
        return ScanResult(ScanOutcome.ALREADY_SCANNED, current)

    # ─── Voiding ─────────────────────────────────────────────────

    async def void_tickets(self, order_id: UUID) -> int:
        """Void every ticket of an order that is not voided yet."""
        count = await self._tickets.void_for_order(order_id, self._clock())
        logger.info(f"Voided {count} tickets", extra={"order_id": str(order_id)})
        return count
