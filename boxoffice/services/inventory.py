"""Inventory Reservation - atomic, all-or-nothing allocation of ticket-type capacity.

Invariants:
    - Either every requested ticket type is incremented by its quantity, or none is
    - Every request is attempted before failing, so the error names ALL shortfalls
    - Sum of successful reservations never exceeds total_inventory, under any
      number of concurrent callers (the storage conditional increment decides)
    - Unknown ticket types, or ones from another event, are ResourceNotFoundError
    - A storage check-constraint failure is an authoritative shortfall, never retried
    - release() is the only way tickets_sold goes down, and never below zero

Design Decisions:
    - Duplicate ticket types are merged before reserving: one UPDATE per row
    - The Reservation is the success token the Ticket Issuer consumes; it can be
      rebuilt from an order's line items for release on failure or refund
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from boxoffice.core.errors import (
    ConstraintViolationError, ErrorContext, InsufficientInventoryError,
    InvalidSelectionError, ResourceNotFoundError, Shortfall,
)
from boxoffice.core.order_math import LineItem
from boxoffice.core.repository_protocols import InventoryRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationRequest:
    ticket_type_id: UUID
    quantity: int


@dataclass(frozen=True)
class ReservedItem:
    """A reserved quantity plus the ticket type's stored price at reservation time."""
    ticket_type_id: UUID
    quantity: int
    name: str
    unit_price: Decimal
    unit_fee: Decimal


@dataclass(frozen=True)
class Reservation:
    reservation_id: UUID
    event_id: UUID
    items: tuple[ReservedItem, ...]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    @classmethod
    def from_line_items(
        cls,
        event_id: UUID,
        line_items: Iterable[LineItem],
        reservation_id: UUID | None = None,
    ) -> "Reservation":
        """Rebuild the reservation an order was created from."""
        return cls(
            reservation_id=reservation_id or uuid4(),
            event_id=event_id,
            items=tuple(
                ReservedItem(
                    ticket_type_id=UUID(li.ticket_type_id),
                    quantity=li.quantity,
                    name=li.display_name,
                    unit_price=li.unit_price,
                    unit_fee=li.unit_fee,
                )
                for li in line_items
            ),
        )


def merge_requests(requests: Sequence[ReservationRequest]) -> list[ReservationRequest]:
    """Validate quantities and merge duplicate ticket types, first-seen order kept.

    Raises:
        InvalidSelectionError: empty request list or a quantity <= 0.
    """
    if not requests:
        raise InvalidSelectionError("No ticket types requested", "line_items")
    merged: dict[UUID, int] = {}
    for request in requests:
        if request.quantity <= 0:
            raise InvalidSelectionError(
                f"Quantity for ticket type {request.ticket_type_id} must be positive",
                "quantity",
            )
        merged[request.ticket_type_id] = merged.get(request.ticket_type_id, 0) + request.quantity
    return [ReservationRequest(tt_id, qty) for tt_id, qty in merged.items()]


class InventoryReservation:
    """Reserves and releases capacity through an InventoryRepository."""

    def __init__(self, repository: InventoryRepository):
        self._repository = repository

    async def reserve(
        self, event_id: UUID, requests: Sequence[ReservationRequest],
    ) -> Reservation:
        """Reserve every request or none.

        Raises:
            InvalidSelectionError: empty request or non-positive quantity.
            ResourceNotFoundError: ticket type unknown or not part of event_id.
            InsufficientInventoryError: one or more ticket types lack capacity;
                carries one Shortfall per unsatisfiable ticket type.
        """
        merged = merge_requests(requests)
        try:
            items = await self._reserve_all(event_id, merged)
        except ConstraintViolationError as e:
            logger.error(
                f"Inventory check constraint rejected reservation: {e.constraint}",
                extra={"event_id": str(event_id), "error_code": e.code},
            )
            raise InsufficientInventoryError(
                await self._current_shortfalls(merged),
                ErrorContext(event_id=str(event_id)),
            ) from e

        reservation = Reservation(
            reservation_id=uuid4(), event_id=event_id, items=tuple(items),
        )
        logger.info(
            f"Reserved {reservation.total_quantity} tickets across "
            f"{len(items)} ticket types",
            extra={"event_id": str(event_id)},
        )
        return reservation

    async def release(self, reservation: Reservation) -> None:
        """Give reserved capacity back. Compensation for a reservation that will not be paid."""
        async with self._repository.unit_of_work() as uow:
            for item in reservation.items:
                await uow.decrement(item.ticket_type_id, item.quantity)
        logger.info(
            f"Released {reservation.total_quantity} tickets "
            f"(reservation {reservation.reservation_id})",
            extra={"event_id": str(reservation.event_id)},
        )

    async def _reserve_all(
        self, event_id: UUID, merged: list[ReservationRequest],
    ) -> list[ReservedItem]:
        items: list[ReservedItem] = []
        shortfalls: list[Shortfall] = []
        async with self._repository.unit_of_work() as uow:
            for request in merged:
                snapshot = await uow.describe(request.ticket_type_id)
                if snapshot is None or snapshot.event_id != event_id:
                    raise ResourceNotFoundError(
                        "TicketType", str(request.ticket_type_id),
                        ErrorContext(event_id=str(event_id)),
                    )
                if await uow.try_increment(event_id, request.ticket_type_id, request.quantity):
                    items.append(ReservedItem(
                        ticket_type_id=snapshot.id,
                        quantity=request.quantity,
                        name=snapshot.name,
                        unit_price=snapshot.unit_price,
                        unit_fee=snapshot.unit_fee,
                    ))
                    continue
                latest = await uow.describe(request.ticket_type_id) or snapshot
                shortfalls.append(Shortfall(
                    ticket_type_id=str(request.ticket_type_id),
                    name=latest.name,
                    requested=request.quantity,
                    available=latest.available or 0,
                ))

            if shortfalls:
                logger.warning(
                    f"Insufficient inventory for {len(shortfalls)} ticket types",
                    extra={"event_id": str(event_id)},
                )
                raise InsufficientInventoryError(
                    shortfalls, ErrorContext(event_id=str(event_id)),
                )
        return items

    async def _current_shortfalls(
        self, merged: list[ReservationRequest],
    ) -> list[Shortfall]:
        shortfalls = []
        async with self._repository.unit_of_work() as uow:
            for request in merged:
                snapshot = await uow.describe(request.ticket_type_id)
                available = snapshot.available if snapshot else 0
                if available is not None and available >= request.quantity:
                    continue
                shortfalls.append(Shortfall(
                    ticket_type_id=str(request.ticket_type_id),
                    name=snapshot.name if snapshot else str(request.ticket_type_id),
                    requested=request.quantity,
                    available=available or 0,
                ))
        return shortfalls
