"""Pagination - offset- and cursor-based shaping of list reads.

Invariants:
    - page >= 1 and 1 <= page_size <= MAX_PAGE_SIZE after normalization
    - offset = (page - 1) * page_size; total_pages = ceil(total / page_size)
    - start_index/end_index are 1-based and both 0 when the page is empty
    - Cursor reads fetch limit + 1 rows; the extra row only signals has_more
    - next_cursor comes from the last kept row, and only when more rows exist
    - previous_cursor comes from the first row, and only when a cursor was given
    - Backward pages are reversed before cursors are derived

Design Decisions:
    - Pure functions over a query-builder wrapper: repositories apply
      offset/limit themselves, these helpers only compute and shape
"""

import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from boxoffice.core.domain_types import CursorDirection, SortOrder

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MIN_PAGE = 1


# ─── Offset Pagination ───────────────────────────────────────────

@dataclass(frozen=True)
class PaginationOptions:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    sort_by: str = "created_at"
    sort_order: SortOrder = SortOrder.DESC


@dataclass(frozen=True)
class PaginationMeta:
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool
    start_index: int
    end_index: int


@dataclass(frozen=True)
class PaginatedResult(Generic[T]):
    data: list[T]
    pagination: PaginationMeta


def normalize_pagination(
    page: int | None = None,
    page_size: int | None = None,
    sort_by: str | None = None,
    sort_order: SortOrder | str | None = None,
) -> PaginationOptions:
    """Clamp page and page size into range and fill defaults."""
    page = max(MIN_PAGE, int(page if page is not None else 1))
    size = page_size if page_size is not None else DEFAULT_PAGE_SIZE
    size = min(MAX_PAGE_SIZE, max(1, int(size)))
    return PaginationOptions(
        page=page,
        page_size=size,
        sort_by=sort_by or "created_at",
        sort_order=SortOrder(sort_order) if sort_order else SortOrder.DESC,
    )


def calculate_pagination(
    total_items: int, options: PaginationOptions,
) -> tuple[int, int, PaginationMeta]:
    """Return (offset, limit, meta) where meta has no item indices yet."""
    total_pages = math.ceil(total_items / options.page_size)
    offset = (options.page - 1) * options.page_size
    meta = PaginationMeta(
        page=options.page,
        page_size=options.page_size,
        total_items=total_items,
        total_pages=total_pages,
        has_next_page=options.page < total_pages,
        has_previous_page=options.page > 1,
        start_index=0,
        end_index=0,
    )
    return offset, options.page_size, meta


def build_paginated_response(
    data: list[T], total_items: int, options: PaginationOptions,
) -> PaginatedResult[T]:
    """Attach pagination metadata, including 1-based item indices."""
    offset, _, meta = calculate_pagination(total_items, options)
    start_index = offset + 1 if data else 0
    end_index = start_index + len(data) - 1 if data else 0
    return PaginatedResult(
        data=data,
        pagination=PaginationMeta(
            page=meta.page,
            page_size=meta.page_size,
            total_items=meta.total_items,
            total_pages=meta.total_pages,
            has_next_page=meta.has_next_page,
            has_previous_page=meta.has_previous_page,
            start_index=start_index,
            end_index=end_index,
        ),
    )


# ─── Cursor Pagination ───────────────────────────────────────────

@dataclass(frozen=True)
class CursorOptions:
    cursor: str | None = None
    limit: int = DEFAULT_PAGE_SIZE
    direction: CursorDirection = CursorDirection.FORWARD
    sort_order: SortOrder = SortOrder.DESC

    @property
    def fetch_limit(self) -> int:
        """Rows to request from storage: one extra to detect more data."""
        return self.limit + 1


@dataclass(frozen=True)
class CursorPage(Generic[T]):
    data: list[T]
    next_cursor: str | None
    previous_cursor: str | None
    has_more: bool
    count: int


def normalize_cursor_options(
    cursor: str | None = None,
    limit: int | None = None,
    direction: CursorDirection | str | None = None,
    sort_order: SortOrder | str | None = None,
) -> CursorOptions:
    size = limit if limit is not None else DEFAULT_PAGE_SIZE
    return CursorOptions(
        cursor=cursor or None,
        limit=min(MAX_PAGE_SIZE, max(1, int(size))),
        direction=CursorDirection(direction) if direction else CursorDirection.FORWARD,
        sort_order=SortOrder(sort_order) if sort_order else SortOrder.DESC,
    )


def seeks_after(options: CursorOptions) -> bool:
    """True when the storage filter is `column > cursor`, False for `<`.

    Forward over descending order walks towards smaller keys; backward
    flips the comparison.
    """
    ascending = options.sort_order == SortOrder.ASC
    forward = options.direction == CursorDirection.FORWARD
    return ascending == forward


def build_cursor_response(
    rows: Sequence[T], options: CursorOptions, cursor_of: Callable[[T], str],
) -> CursorPage[T]:
    """Trim the extra probe row and derive next/previous cursors."""
    has_more = len(rows) > options.limit
    items = list(rows[: options.limit]) if has_more else list(rows)
    if options.direction == CursorDirection.BACKWARD:
        items.reverse()

    next_cursor = cursor_of(items[-1]) if has_more and items else None
    previous_cursor = cursor_of(items[0]) if options.cursor and items else None
    return CursorPage(
        data=items,
        next_cursor=next_cursor,
        previous_cursor=previous_cursor,
        has_more=has_more,
        count=len(items),
    )


# ─── Query String / UI Helpers ───────────────────────────────────

def parse_pagination_query(params: Mapping[str, str]) -> PaginationOptions:
    """Build options from ?page=&pageSize=&sortBy=&sortOrder= (aliases accepted)."""
    page = _int_or_none(params.get("page"))
    size = _int_or_none(params.get("pageSize") or params.get("page_size") or params.get("limit"))
    sort_by = params.get("sortBy") or params.get("sort_by") or params.get("sort")
    order = params.get("sortOrder") or params.get("sort_order") or params.get("order")
    if order not in ("asc", "desc"):
        order = None
    return normalize_pagination(page, size, sort_by, order)


def parse_cursor_query(params: Mapping[str, str]) -> CursorOptions:
    direction = params.get("direction")
    if direction not in ("forward", "backward"):
        direction = None
    return normalize_cursor_options(
        cursor=params.get("cursor"),
        limit=_int_or_none(params.get("limit")),
        direction=direction,
    )


def get_page_numbers(
    current_page: int, total_pages: int, surrounding: int = 2,
) -> list[int]:
    """Page links for a pager: first, last, and a window around current.

    -1 marks an ellipsis. get_page_numbers(5, 10) == [1, -1, 3, 4, 5, 6, 7, -1, 10]
    """
    if total_pages <= 0:
        return []
    if total_pages == 1:
        return [1]

    pages = [1]
    start = max(2, current_page - surrounding)
    end = min(total_pages - 1, current_page + surrounding)
    if start > 2:
        pages.append(-1)
    pages.extend(range(start, end + 1))
    if end < total_pages - 1:
        pages.append(-1)
    pages.append(total_pages)
    return pages


def _int_or_none(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None
