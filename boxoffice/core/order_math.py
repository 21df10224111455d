"""Order Aggregator - turns a checkout selection into priced line items and totals.

Invariants:
    - Only selection entries with quantity > 0 become line items, in insertion order
    - subtotal = sum(unit_price * qty), fees = sum(unit_fee * qty) before any promo
    - A promo discount applies to the subtotal first and is clamped so the
      discounted subtotal is never negative
    - Fees follow the discounted subtotal proportionally; without a promo they
      are exactly sum(unit_fee * qty)
    - total = discounted subtotal + fees, rounded to cents at the very end
    - Pure: no IO, no async, no DB

Design Decisions:
    - Decimal for money: 49.99 * 3 is exactly 149.97
    - validate_checkout runs before reservation so malformed input never
      touches inventory
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from boxoffice.core.domain_types import DiscountType
from boxoffice.core.errors import InvalidSelectionError

CENTS = Decimal("0.01")
ZERO = Decimal("0")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class SelectionItem:
    """One entry of a checkout selection, keyed by ticket type id."""
    name: str
    price: Decimal
    fee: Decimal
    quantity: int


@dataclass(frozen=True)
class LineItem:
    ticket_type_id: str
    quantity: int
    unit_price: Decimal
    unit_fee: Decimal
    display_name: str

    def to_dict(self) -> dict:
        return {
            "ticket_type_id": self.ticket_type_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "unit_fee": str(self.unit_fee),
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        return cls(
            ticket_type_id=data["ticket_type_id"],
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data["unit_price"])),
            unit_fee=Decimal(str(data["unit_fee"])),
            display_name=data["display_name"],
        )


@dataclass(frozen=True)
class PromoCode:
    code: str
    discount_type: DiscountType
    amount: Decimal

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("Promo amount cannot be negative")
        if self.discount_type == DiscountType.PERCENTAGE and self.amount > 100:
            raise ValueError("Percentage discount cannot exceed 100")


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    fees: Decimal
    total: Decimal


def selection_to_line_items(selection: Mapping[str, SelectionItem]) -> list[LineItem]:
    """Drop zero-quantity entries and map the rest to LineItems, order preserved.

    Negative quantities are kept so validate_checkout can reject them.
    """
    return [
        LineItem(
            ticket_type_id=ticket_type_id,
            quantity=item.quantity,
            unit_price=item.price,
            unit_fee=item.fee,
            display_name=item.name,
        )
        for ticket_type_id, item in selection.items()
        if item.quantity != 0
    ]


def apply_discount(subtotal: Decimal, promo: PromoCode | None) -> Decimal:
    """Return the discounted subtotal, never below zero."""
    if promo is None:
        return subtotal
    if promo.discount_type == DiscountType.PERCENTAGE:
        discounted = subtotal - subtotal * promo.amount / Decimal(100)
    else:
        discounted = subtotal - promo.amount
    return max(ZERO, discounted)


def compute_totals(
    line_items: list[LineItem], promo: PromoCode | None = None,
) -> OrderTotals:
    """Compute subtotal, discount, fees and total for a list of line items."""
    subtotal = sum((li.unit_price * li.quantity for li in line_items), ZERO)
    raw_fees = sum((li.unit_fee * li.quantity for li in line_items), ZERO)

    discounted = apply_discount(subtotal, promo)
    if promo is not None and subtotal > 0:
        fees = raw_fees * discounted / subtotal
    else:
        fees = raw_fees

    discounted = _round(discounted)
    fees = _round(fees)
    return OrderTotals(
        subtotal=_round(subtotal),
        discount=_round(subtotal) - discounted,
        fees=fees,
        total=discounted + fees,
    )


def ticket_count(line_items: list[LineItem]) -> int:
    return sum(li.quantity for li in line_items)


def is_valid_email(email: str) -> bool:
    return bool(email) and _EMAIL_RE.match(email.strip()) is not None


def validate_checkout(line_items: list[LineItem], purchaser_email: str) -> None:
    """Reject empty or malformed checkout input before reservation.

    Raises:
        InvalidSelectionError: no line items, a non-positive quantity,
            or an email not shaped like local@domain.tld.
    """
    if not line_items:
        raise InvalidSelectionError("No line items provided", "line_items")
    for li in line_items:
        if li.quantity <= 0:
            raise InvalidSelectionError(
                f"Quantity for '{li.display_name}' must be positive", "quantity",
            )
        if li.unit_price < 0 or li.unit_fee < 0:
            raise InvalidSelectionError(
                f"Price for '{li.display_name}' cannot be negative", "price",
            )
    if not is_valid_email(purchaser_email):
        raise InvalidSelectionError("Invalid purchaser email", "purchaser_email")


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)
