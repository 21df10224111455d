"""Admin - back-office order and ticket listings.

Invariants:
    - Query-string paging is normalized (page >= 1, page size 1..100), never rejected
    - Orders use offset pages with pager links; tickets use keyset cursors
    - Unknown status or event filters are 400 / empty results, not 500
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request

from boxoffice.api.deps import get_box_office
from boxoffice.core.domain_types import OrderStatus
from boxoffice.core.pagination import (
    get_page_numbers, parse_cursor_query, parse_pagination_query,
)
from boxoffice.schemas.admin import OrderPage, TicketPage
from boxoffice.services.container import BoxOffice

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/orders", response_model=OrderPage)
async def list_orders(
    request: Request,
    event_id: UUID | None = Query(None),
    status: OrderStatus | None = Query(None),
    box_office: BoxOffice = Depends(get_box_office),
):
    """Offset-paginated orders, newest first by default."""
    options = parse_pagination_query(request.query_params)
    result = await box_office.reports.list_orders(options, event_id=event_id, status=status)
    return OrderPage.from_result(
        result,
        get_page_numbers(result.pagination.page, result.pagination.total_pages),
    )


@router.get("/tickets", response_model=TicketPage)
async def list_tickets(
    request: Request,
    event_id: UUID | None = Query(None),
    box_office: BoxOffice = Depends(get_box_office),
):
    """Cursor-paginated tickets ordered by issue time."""
    options = parse_cursor_query(request.query_params)
    page = await box_office.reports.list_tickets(options, event_id=event_id)
    return TicketPage.from_page(page)
