"""Checkout - rate gate, pricing, atomic reservation, pending order.

Invariants:
    - Order of operations: rate limit -> validate -> reserve -> price -> persist
    - Malformed input never reaches inventory
    - Line items are priced from the stored ticket types, not from the
      client-supplied selection values
    - If the order cannot be persisted after a successful reservation, the
      reservation is released before the error propagates
    - Every attempt that reaches reservation is tracked (orders.created/failed)

Design Decisions:
    - Orders start pending; tickets are minted only when the payment webhook
      confirms them (services/payment_confirmation.py)
    - The reservation id is the order id, so the order alone identifies what to release
"""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from boxoffice.core.domain_types import OrderStatus
from boxoffice.core.errors import (
    BoxOfficeError, ErrorContext, InvalidSelectionError, ResourceNotFoundError,
)
from boxoffice.core.order_math import (
    LineItem, PromoCode, SelectionItem, compute_totals, selection_to_line_items,
    ticket_count, validate_checkout,
)
from boxoffice.core.records import OrderRecord
from boxoffice.core.repository_protocols import EventRepository, OrderRepository
from boxoffice.services.inventory import (
    InventoryReservation, Reservation, ReservationRequest,
)
from boxoffice.services.metrics import MetricsRegistry
from boxoffice.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    order: OrderRecord
    reservation: Reservation


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def reprice(line_items: list[LineItem], reservation: Reservation) -> list[LineItem]:
    """Replace price, fee and name with the values stored for each ticket type."""
    stored = {str(item.ticket_type_id): item for item in reservation.items}
    return [
        LineItem(
            ticket_type_id=li.ticket_type_id,
            quantity=li.quantity,
            unit_price=stored[li.ticket_type_id].unit_price,
            unit_fee=stored[li.ticket_type_id].unit_fee,
            display_name=stored[li.ticket_type_id].name,
        )
        for li in line_items
    ]


class CheckoutService:
    def __init__(
        self,
        inventory: InventoryReservation,
        orders: OrderRepository,
        events: EventRepository,
        metrics: MetricsRegistry,
        limiter: RateLimiter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._inventory = inventory
        self._orders = orders
        self._events = events
        self._metrics = metrics
        self._limiter = limiter
        self._clock = clock

    async def checkout(
        self,
        event_id: UUID,
        selection: Mapping[str, SelectionItem],
        purchaser_email: str,
        purchaser_name: str | None = None,
        promo: PromoCode | None = None,
        metadata: Mapping[str, Any] | None = None,
        client_key: str | None = None,
    ) -> CheckoutResult:
        """Create a pending order holding reserved inventory.

        Raises:
            RateLimitedError: client_key exceeded the order policy.
            InvalidSelectionError: empty selection, bad quantity or email.
            ResourceNotFoundError: unknown event or ticket type.
            InsufficientInventoryError: names every unsatisfiable ticket type.
        """
        if self._limiter is not None and client_key is not None:
            await self._limiter.enforce(
                client_key, {"endpoint": "checkout", **(_identity(client_key))},
            )

        line_items = selection_to_line_items(selection)
        validate_checkout(line_items, purchaser_email)
        line_items = [
            replace(li, ticket_type_id=str(_ticket_type_uuid(li.ticket_type_id)))
            for li in line_items
        ]
        requests = [
            ReservationRequest(UUID(li.ticket_type_id), li.quantity)
            for li in line_items
        ]
        if await self._events.get(event_id) is None:
            raise ResourceNotFoundError("Event", str(event_id))

        started = time.perf_counter()
        try:
            result = await self._reserve_and_persist(
                event_id, line_items, requests, purchaser_email.strip(),
                purchaser_name, promo, dict(metadata or {}),
            )
        except BoxOfficeError:
            self._metrics.track_order_creation(
                _elapsed_ms(started), False, str(event_id),
            )
            raise

        order = result.order
        self._metrics.track_order_creation(
            _elapsed_ms(started), True, str(event_id),
            ticket_count(order.line_items), order.total,
        )
        logger.info(
            f"Order created: {ticket_count(order.line_items)} tickets, total {order.total}",
            extra={"order_id": str(order.id), "event_id": str(event_id)},
        )
        return result

    async def _reserve_and_persist(
        self,
        event_id: UUID,
        line_items: list[LineItem],
        requests: list[ReservationRequest],
        purchaser_email: str,
        purchaser_name: str | None,
        promo: PromoCode | None,
        metadata: dict[str, Any],
    ) -> CheckoutResult:
        reservation = await self._inventory.reserve(event_id, requests)
        priced = reprice(line_items, reservation)
        totals = compute_totals(priced, promo)
        order = OrderRecord(
            id=reservation.reservation_id,
            event_id=event_id,
            purchaser_email=purchaser_email,
            purchaser_name=purchaser_name,
            line_items=_merge_line_items(priced),
            subtotal=totals.subtotal,
            discount=totals.discount,
            fees=totals.fees,
            total=totals.total,
            status=OrderStatus.PENDING,
            created_at=self._clock(),
            promo_code=promo.code if promo else None,
            metadata=metadata,
        )
        try:
            await self._orders.add(order)
        except BoxOfficeError as e:
            logger.error(
                f"Order persistence failed, releasing reservation: {e.message}",
                extra={"order_id": str(order.id), "error_code": e.code},
            )
            await self._inventory.release(reservation)
            e.context.order_id = str(order.id)
            raise
        return CheckoutResult(order=order, reservation=reservation)


def _merge_line_items(line_items: list[LineItem]) -> list[LineItem]:
    """One line per ticket type, matching the merged reservation."""
    merged: dict[str, LineItem] = {}
    for li in line_items:
        existing = merged.get(li.ticket_type_id)
        if existing is None:
            merged[li.ticket_type_id] = li
        else:
            merged[li.ticket_type_id] = LineItem(
                ticket_type_id=li.ticket_type_id,
                quantity=existing.quantity + li.quantity,
                unit_price=existing.unit_price,
                unit_fee=existing.unit_fee,
                display_name=existing.display_name,
            )
    return list(merged.values())


def _ticket_type_uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise InvalidSelectionError(
            f"Unknown ticket type id '{value}'", "line_items",
            ErrorContext(ticket_type_id=value),
        )


def _identity(client_key: str) -> dict[str, str]:
    kind, _, value = client_key.partition(":")
    if kind == "user":
        return {"user_id": value}
    if kind == "ip":
        return {"ip": value}
    return {}


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
