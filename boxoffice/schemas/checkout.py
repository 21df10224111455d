"""Checkout Schemas - boundary validation for checkout selections and order responses.

Invariants:
    - Selection keys are ticket-type UUIDs; values carry name, price, fee, quantity
    - quantity in [0, 100], price/fee >= 0; zero quantities are allowed here
      and dropped later by selection_to_line_items
    - parse_selection() turns pydantic failures into InvalidSelectionError so
      services never see an untyped mapping

Design Decisions:
    - TypeAdapter over a wrapper model: the selection is a bare mapping on the wire
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from boxoffice.core.errors import InvalidSelectionError
from boxoffice.core.order_math import SelectionItem
from boxoffice.core.records import OrderRecord

MAX_QUANTITY_PER_TYPE = 100


class SelectionItemIn(BaseModel):
    """One selection entry as posted by the storefront."""
    name: str = Field("", max_length=120)
    price: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    fee: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    quantity: int = Field(ge=0, le=MAX_QUANTITY_PER_TYPE)


_SELECTION = TypeAdapter(dict[UUID, SelectionItemIn])


def parse_selection(raw: Mapping[str, Any]) -> dict[str, SelectionItem]:
    """Validate an untyped selection mapping, keeping insertion order.

    Raises:
        InvalidSelectionError: not a mapping, a key is not a UUID, or an
            entry is missing/malformed.
    """
    try:
        parsed = _SELECTION.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(loc) for loc in first["loc"]) or "selection"
        raise InvalidSelectionError(f"Invalid selection: {first['msg']}", field)
    return {
        str(ticket_type_id): SelectionItem(
            name=item.name, price=item.price, fee=item.fee, quantity=item.quantity,
        )
        for ticket_type_id, item in parsed.items()
    }


class CheckoutCreate(BaseModel):
    """Checkout request body."""
    event_id: UUID
    purchaser_email: str = Field(min_length=3, max_length=320)
    purchaser_name: str | None = Field(None, max_length=200)
    selection: dict[str, Any]
    promo_code: str | None = Field(None, max_length=64)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("purchaser_email")
    @classmethod
    def strip_email(cls, v: str) -> str:
        return v.strip()


class LineItemOut(BaseModel):
    ticket_type_id: str
    display_name: str
    quantity: int
    unit_price: Decimal
    unit_fee: Decimal


class OrderResponse(BaseModel):
    """Order as returned by checkout and the admin listing."""
    id: UUID
    event_id: UUID
    status: str
    purchaser_email: str
    purchaser_name: str | None
    line_items: list[LineItemOut]
    subtotal: Decimal
    discount: Decimal
    fees: Decimal
    total: Decimal
    promo_code: str | None
    payment_id: str | None
    created_at: datetime
    paid_at: datetime | None

    @classmethod
    def from_record(cls, order: OrderRecord) -> "OrderResponse":
        return cls(
            id=order.id,
            event_id=order.event_id,
            status=order.status.value,
            purchaser_email=order.purchaser_email,
            purchaser_name=order.purchaser_name,
            line_items=[
                LineItemOut(
                    ticket_type_id=li.ticket_type_id,
                    display_name=li.display_name,
                    quantity=li.quantity,
                    unit_price=li.unit_price,
                    unit_fee=li.unit_fee,
                )
                for li in order.line_items
            ],
            subtotal=order.subtotal,
            discount=order.discount,
            fees=order.fees,
            total=order.total,
            promo_code=order.promo_code,
            payment_id=order.payment_id,
            created_at=order.created_at,
            paid_at=order.paid_at,
        )
