"""Admin Schemas - paginated envelopes for back-office listings."""

from pydantic import BaseModel

from boxoffice.core.pagination import CursorPage, PaginatedResult, PaginationMeta
from boxoffice.core.records import OrderRecord, TicketRecord
from boxoffice.schemas.checkout import OrderResponse
from boxoffice.schemas.tickets import TicketOut


class PaginationOut(BaseModel):
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool
    start_index: int
    end_index: int
    page_numbers: list[int]

    @classmethod
    def from_meta(cls, meta: PaginationMeta, page_numbers: list[int]) -> "PaginationOut":
        return cls(
            page=meta.page,
            page_size=meta.page_size,
            total_items=meta.total_items,
            total_pages=meta.total_pages,
            has_next_page=meta.has_next_page,
            has_previous_page=meta.has_previous_page,
            start_index=meta.start_index,
            end_index=meta.end_index,
            page_numbers=page_numbers,
        )


class OrderPage(BaseModel):
    data: list[OrderResponse]
    pagination: PaginationOut

    @classmethod
    def from_result(
        cls, result: PaginatedResult[OrderRecord], page_numbers: list[int],
    ) -> "OrderPage":
        return cls(
            data=[OrderResponse.from_record(o) for o in result.data],
            pagination=PaginationOut.from_meta(result.pagination, page_numbers),
        )


class TicketPage(BaseModel):
    data: list[TicketOut]
    next_cursor: str | None
    previous_cursor: str | None
    has_more: bool
    count: int

    @classmethod
    def from_page(cls, page: CursorPage[TicketRecord]) -> "TicketPage":
        return cls(
            data=[TicketOut.from_record(t) for t in page.data],
            next_cursor=page.next_cursor,
            previous_cursor=page.previous_cursor,
            has_more=page.has_more,
            count=page.count,
        )
