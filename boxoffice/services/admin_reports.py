"""Admin Reports - paginated order and ticket listings for the back office.

Invariants:
    - Every storage read goes through the QueryGuard (timed, deadline-bound)
    - Orders page by offset (stable total for a pager), tickets by keyset cursor
      (scans insert rows continuously, offsets would drift)
"""

import logging
from uuid import UUID

from boxoffice.core.domain_types import OrderStatus
from boxoffice.core.pagination import (
    CursorOptions, CursorPage, PaginatedResult, PaginationOptions,
    build_cursor_response, build_paginated_response, calculate_pagination,
)
from boxoffice.core.records import OrderRecord, TicketRecord
from boxoffice.core.repository_protocols import OrderRepository, TicketRepository
from boxoffice.services.query_guard import QueryGuard

logger = logging.getLogger(__name__)


class AdminReports:
    def __init__(
        self, orders: OrderRepository, tickets: TicketRepository, guard: QueryGuard,
    ):
        self._orders = orders
        self._tickets = tickets
        self._guard = guard

    async def list_orders(
        self,
        options: PaginationOptions,
        event_id: UUID | None = None,
        status: OrderStatus | None = None,
    ) -> PaginatedResult[OrderRecord]:
        context = {
            "event_id": str(event_id) if event_id else None,
            "status": status.value if status else None,
        }
        total = await self._guard.run(
            "SELECT count(*) FROM orders", "admin.orders",
            self._orders.count(event_id=event_id, status=status),
            row_counter=lambda _: 1, context=context,
        )
        offset, limit, _ = calculate_pagination(total, options)
        rows = await self._guard.run(
            f"SELECT * FROM orders ORDER BY created_at {options.sort_order.value} "
            f"LIMIT {limit} OFFSET {offset}",
            "admin.orders",
            self._orders.list_page(
                offset, limit, event_id=event_id, status=status,
                sort_order=options.sort_order,
            ),
            context=context,
        )
        logger.debug(
            f"Order page {options.page}: {len(rows)} of {total}",
            extra={"event_id": context["event_id"]},
        )
        return build_paginated_response(rows, total, options)

    async def list_tickets(
        self, options: CursorOptions, event_id: UUID | None = None,
    ) -> CursorPage[TicketRecord]:
        rows = await self._guard.run(
            f"SELECT * FROM tickets ORDER BY issued_at {options.sort_order.value}, id "
            f"LIMIT {options.fetch_limit}",
            "admin.tickets",
            self._tickets.list_cursor(options, event_id=event_id),
            context={"cursor": options.cursor, "direction": options.direction.value},
        )
        return build_cursor_response(rows, options, lambda t: str(t.id))
