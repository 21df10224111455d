"""Payment Confirmation - verified, idempotent finalization of orders from provider webhooks.

Invariants:
    - Nothing is read from a webhook body before its HMAC and timestamp verify
    - Each delivery signature is recorded in the replay store with an expiry;
      a repeat inside that window is DuplicateConfirmationError
    - pending -> paid happens once per order; a second confirmation of a paid
      order holding all its tickets (even under a new signature) is
      DuplicateConfirmationError and issues no tickets
    - Tickets are issued only after the paid transition succeeded; a paid order
      left short of tickets by a failed issuance is completed by the next
      confirmation, never over-issued
    - A delivery that fails with a retryable error is released from the replay
      store so the provider can send it again
    - fail() and refund() give the order's inventory back; refund() also
      voids its tickets

Design Decisions:
    - Status moves are compare-and-set in storage, so two racing deliveries
      cannot both pass the paid transition
    - Paid transitions and issuance are serialized per order with an in-process
      lock; resuming a short issuance assumes one worker receives webhooks
    - Unhandled event types never reach this service: the payload schema
      rejects them
"""

import asyncio
import logging
from collections import Counter
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from pydantic import ValidationError

from boxoffice.core.domain_types import ORDER_TRANSITIONS, OrderStatus
from boxoffice.core.errors import (
    BoxOfficeError, ConstraintViolationError, DuplicateConfirmationError, ErrorContext,
    InvalidSelectionError, InvalidTransitionError, ResourceNotFoundError,
    SignatureMismatchError,
)
from boxoffice.core.order_math import ticket_count
from boxoffice.core.records import OrderRecord, TicketRecord
from boxoffice.core.repository_protocols import OrderRepository, ReplayStore
from boxoffice.core.webhook_signing import (
    DEFAULT_MAX_AGE_SECONDS, DEFAULT_MAX_FUTURE_SECONDS, signature_hash,
    verify_signature,
)
from boxoffice.schemas.webhooks import PaymentWebhookPayload
from boxoffice.services.inventory import InventoryReservation, Reservation
from boxoffice.services.metrics import MetricsRegistry
from boxoffice.services.ticket_issuer import TicketIssuer

logger = logging.getLogger(__name__)

DEFAULT_REPLAY_WINDOW_SECONDS = 24 * 3600


@dataclass(frozen=True)
class ConfirmationResult:
    event_type: str
    order: OrderRecord
    tickets: list[TicketRecord] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentConfirmationService:
    def __init__(
        self,
        orders: OrderRepository,
        replay_store: ReplayStore,
        inventory: InventoryReservation,
        issuer: TicketIssuer,
        metrics: MetricsRegistry,
        webhook_secret: str,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        max_future_seconds: int = DEFAULT_MAX_FUTURE_SECONDS,
        replay_window_seconds: int = DEFAULT_REPLAY_WINDOW_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not webhook_secret:
            raise ValueError("Webhook signing secret must not be empty")
        self._orders = orders
        self._replay = replay_store
        self._inventory = inventory
        self._issuer = issuer
        self._metrics = metrics
        self._secret = webhook_secret
        self._max_age = max_age_seconds
        self._max_future = max_future_seconds
        self._replay_window = timedelta(seconds=replay_window_seconds)
        self._clock = clock
        self._order_locks: dict[UUID, asyncio.Lock] = {}
        self._order_waiters: Counter = Counter()

    async def confirm(
        self,
        body: str,
        signature: str | None,
        timestamp: int | None,
        source_ip: str | None = None,
    ) -> ConfirmationResult:
        """Verify, de-duplicate and apply one payment webhook delivery.

        Raises:
            SignatureMismatchError: bad, missing, stale or future-dated signature.
            InvalidSelectionError: signed body is not a known payment event.
            DuplicateConfirmationError: replayed delivery or already-paid order.
            ResourceNotFoundError: order does not exist.
            InvalidTransitionError: order status does not allow the event.
        """
        now = self._clock()
        verification = verify_signature(
            self._secret, signature, timestamp, body, int(now.timestamp()),
            self._max_age, self._max_future,
        )
        if not verification.valid:
            logger.warning(
                f"Webhook signature rejected: {verification.failure.value} "
                f"from {source_ip or 'unknown'}",
                extra={"error_code": "SIGNATURE_MISMATCH"},
            )
            raise SignatureMismatchError(
                f"Webhook signature rejected: {verification.failure.value}",
            )

        try:
            payload = PaymentWebhookPayload.model_validate_json(body)
        except ValidationError as e:
            first = e.errors()[0]
            raise InvalidSelectionError(
                f"Invalid webhook payload: {first['msg']}",
                ".".join(str(loc) for loc in first["loc"]) or "body",
            )

        replay_key = signature_hash(signature)
        recorded = await self._replay.record(
            replay_key, payload.type, source_ip,
            now + self._replay_window, now,
        )
        if not recorded:
            logger.warning(
                f"Replayed webhook {payload.type} rejected",
                extra={"order_id": str(payload.order_id)},
            )
            raise DuplicateConfirmationError(
                "Webhook delivery already processed",
                ErrorContext(order_id=str(payload.order_id)),
            )

        try:
            return await self._apply(payload)
        except BoxOfficeError as e:
            if e.retryable:
                # The same delivery may come back; it must not read as a replay.
                await self._replay.forget(replay_key)
                logger.warning(
                    f"Webhook {payload.type} failed with retryable {e.code}, "
                    f"delivery released for redelivery",
                    extra={"order_id": str(payload.order_id), "error_code": e.code},
                )
            raise

    async def _apply(self, payload: PaymentWebhookPayload) -> ConfirmationResult:
        if payload.type == "payment.succeeded":
            order, tickets = await self.mark_paid(payload.order_id, payload.payment_id)
            return ConfirmationResult(payload.type, order, tickets)
        if payload.type == "payment.failed":
            return ConfirmationResult(payload.type, await self.fail(payload.order_id))
        return ConfirmationResult(payload.type, await self.refund(payload.order_id))

    async def mark_paid(
        self, order_id: UUID, payment_id: str | None,
    ) -> tuple[OrderRecord, list[TicketRecord]]:
        """pending -> paid, then mint the order's tickets.

        A paid order still short of tickets (issuance was interrupted) is not
        a duplicate: only the missing units are minted.
        """
        async with self._order_guard(order_id):
            order = await self._get(order_id)
            if order.status == OrderStatus.PAID:
                return await self._resume(order, payment_id)
            self._check_transition(order, OrderStatus.PAID)

            try:
                moved = await self._orders.transition(
                    order_id, OrderStatus.PENDING, OrderStatus.PAID,
                    payment_id=payment_id, paid_at=self._clock(),
                )
            except ConstraintViolationError:
                logger.warning(
                    f"Payment {payment_id} already finalized another order",
                    extra={"order_id": str(order_id)},
                )
                raise DuplicateConfirmationError(
                    f"Payment '{payment_id}' already confirmed another order",
                    ErrorContext(order_id=str(order_id)),
                )
            if not moved:
                current = await self._get(order_id)
                if current.status == OrderStatus.PAID:
                    raise self._already_paid(current)
                raise InvalidTransitionError(
                    "Order", current.status.value, OrderStatus.PAID.value,
                    ErrorContext(order_id=str(order_id)),
                )

            paid = await self._get(order_id)
            tickets = await self._issue(paid)
            self._metrics.track_payment(True)
            logger.info(
                f"Order paid, {len(tickets)} tickets issued",
                extra={"order_id": str(order_id), "event_id": str(paid.event_id)},
            )
            return paid, tickets

    async def _resume(
        self, order: OrderRecord, payment_id: str | None,
    ) -> tuple[OrderRecord, list[TicketRecord]]:
        if payment_id is not None and order.payment_id not in (None, payment_id):
            raise self._already_paid(order)
        expected = ticket_count(order.line_items)
        held = await self._issuer.tickets_for(order.id)
        if len(held) >= expected:
            raise self._already_paid(order)
        logger.warning(
            f"Paid order holds {len(held)} of {expected} tickets, resuming issuance",
            extra={"order_id": str(order.id)},
        )
        tickets = await self._issue(order)
        self._metrics.increment("tickets.issuance_resumed")
        self._metrics.track_payment(True)
        return order, tickets

    async def _issue(self, order: OrderRecord) -> list[TicketRecord]:
        try:
            return await self._issuer.issue(
                order, Reservation.from_line_items(order.event_id, order.line_items, order.id),
            )
        except BoxOfficeError as e:
            logger.error(
                f"Ticket issuance interrupted: {e.message}",
                extra={"order_id": str(order.id), "error_code": e.code},
            )
            raise

    async def purge_expired_deliveries(self) -> int:
        """Drop replay-store entries whose window has closed."""
        return await self._replay.purge_expired(self._clock())

    async def fail(self, order_id: UUID) -> OrderRecord:
        """pending -> failed; the reserved inventory is released."""
        order = await self._move(order_id, OrderStatus.PENDING, OrderStatus.FAILED)
        await self._inventory.release(
            Reservation.from_line_items(order.event_id, order.line_items, order.id),
        )
        self._metrics.track_payment(False)
        logger.info("Order payment failed", extra={"order_id": str(order_id)})
        return order

    async def refund(self, order_id: UUID) -> OrderRecord:
        """paid -> refunded; tickets voided and inventory released."""
        order = await self._move(order_id, OrderStatus.PAID, OrderStatus.REFUNDED)
        await self._issuer.void_tickets(order_id)
        await self._inventory.release(
            Reservation.from_line_items(order.event_id, order.line_items, order.id),
        )
        self._metrics.increment("orders.refunded")
        logger.info("Order refunded", extra={"order_id": str(order_id)})
        return order

    async def _move(
        self, order_id: UUID, current: OrderStatus, target: OrderStatus,
    ) -> OrderRecord:
        order = await self._get(order_id)
        self._check_transition(order, target)
        if not await self._orders.transition(order_id, current, target):
            latest = await self._get(order_id)
            raise InvalidTransitionError(
                "Order", latest.status.value, target.value,
                ErrorContext(order_id=str(order_id)),
            )
        return await self._get(order_id)

    async def _get(self, order_id: UUID) -> OrderRecord:
        order = await self._orders.get(order_id)
        if order is None:
            raise ResourceNotFoundError("Order", str(order_id))
        return order

    @asynccontextmanager
    async def _order_guard(self, order_id: UUID) -> AsyncIterator[None]:
        """Serialize paid transitions and issuance per order within this process."""
        lock = self._order_locks.get(order_id)
        if lock is None:
            lock = self._order_locks[order_id] = asyncio.Lock()
        self._order_waiters[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._order_waiters[order_id] -= 1
            if not self._order_waiters[order_id]:
                del self._order_waiters[order_id]
                del self._order_locks[order_id]

    @staticmethod
    def _check_transition(order: OrderRecord, target: OrderStatus) -> None:
        if target not in ORDER_TRANSITIONS[order.status]:
            raise InvalidTransitionError(
                "Order", order.status.value, target.value,
                ErrorContext(order_id=str(order.id)),
            )

    @staticmethod
    def _already_paid(order: OrderRecord) -> DuplicateConfirmationError:
        logger.warning(
            "Confirmation for an already-paid order ignored",
            extra={"order_id": str(order.id)},
        )
        return DuplicateConfirmationError(
            f"Order {order.id} is already paid",
            ErrorContext(order_id=str(order.id)),
        )
