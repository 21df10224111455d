"""Payment Confirmation - signed webhooks finalize orders exactly once.

Tests:
    - payment.succeeded marks the order paid and issues its tickets
    - A replayed delivery and a second confirmation of a paid order are duplicates
    - Issuance interrupted by a storage failure is completed by the next delivery
    - Bad, missing and stale signatures are rejected before the body is parsed
    - payment.failed and charge.refunded give inventory back; refunds void tickets
    - Disallowed transitions raise InvalidTransitionError
"""

import json
import time
from decimal import Decimal
from uuid import uuid4

import pytest

from boxoffice.core.domain_types import OrderStatus, TicketStatus
from boxoffice.core.errors import (
    DatabaseError, DuplicateConfirmationError, InvalidSelectionError, InvalidTransitionError,
    ResourceNotFoundError, SignatureMismatchError,
)
from boxoffice.core.order_math import SelectionItem
from boxoffice.core.webhook_signing import compute_signature

WEBHOOK_SECRET = "test-webhook-secret"


def _deliver(box_office, payload: dict, timestamp: int | None = None, secret=WEBHOOK_SECRET):
    body = json.dumps(payload)
    ts = timestamp if timestamp is not None else int(time.time())
    return box_office.payments.confirm(
        body, compute_signature(secret, ts, body), ts, source_ip="203.0.113.9",
    )


async def _pending_order(box_office, event, general, quantity=2):
    result = await box_office.checkout.checkout(
        event.id,
        {str(general.id): SelectionItem("General", general.unit_price, general.unit_fee, quantity)},
        "buyer@example.com",
        purchaser_name="Ada",
    )
    return result.order


def _succeeded(order, payment_id="pi_123"):
    return {"type": "payment.succeeded", "order_id": str(order.id), "payment_id": payment_id}


async def test_success_marks_paid_and_issues_tickets(box_office, store, event, general):
    order = await _pending_order(box_office, event, general)

    result = await _deliver(box_office, _succeeded(order))

    assert result.event_type == "payment.succeeded"
    assert result.order.status == OrderStatus.PAID
    assert result.order.payment_id == "pi_123"
    assert result.order.paid_at is not None
    assert len(result.tickets) == 2
    assert all(t.price == Decimal("49.99") for t in result.tickets)
    assert len(store.tickets) == 2
    assert box_office.metrics.get_counter("payments.succeeded") == 1


async def test_replayed_delivery_is_duplicate(box_office, store, event, general):
    order = await _pending_order(box_office, event, general)
    body = json.dumps(_succeeded(order))
    ts = int(time.time())
    signature = compute_signature(WEBHOOK_SECRET, ts, body)

    await box_office.payments.confirm(body, signature, ts)
    with pytest.raises(DuplicateConfirmationError):
        await box_office.payments.confirm(body, signature, ts)
    assert len(store.tickets) == 2


async def test_second_confirmation_under_new_signature_issues_nothing(
    box_office, store, event, general,
):
    order = await _pending_order(box_office, event, general)
    await _deliver(box_office, _succeeded(order))

    with pytest.raises(DuplicateConfirmationError):
        await _deliver(box_office, _succeeded(order), timestamp=int(time.time()) - 5)
    assert len(store.tickets) == 2


def _fail_ticket_insert(box_office, monkeypatch, on_call=2):
    tickets = box_office.repositories.tickets
    real_add = tickets.add
    calls = {"n": 0}

    async def add(ticket):
        calls["n"] += 1
        if calls["n"] == on_call:
            raise DatabaseError("connection reset", "execute")
        await real_add(ticket)

    monkeypatch.setattr(tickets, "add", add)


async def test_interrupted_issuance_resumes_on_redelivery(
    box_office, store, event, general, monkeypatch,
):
    order = await _pending_order(box_office, event, general, quantity=3)
    _fail_ticket_insert(box_office, monkeypatch)

    with pytest.raises(DatabaseError):
        await _deliver(box_office, _succeeded(order))
    assert store.orders[order.id].status == OrderStatus.PAID
    assert len(store.tickets) == 1

    result = await _deliver(box_office, _succeeded(order), timestamp=int(time.time()) - 5)

    assert len(result.tickets) == 3
    assert len(store.tickets) == 3
    assert len({t.qr_token for t in store.tickets.values()}) == 3
    assert box_office.metrics.get_counter("tickets.issuance_resumed") == 1
    with pytest.raises(DuplicateConfirmationError):
        await _deliver(box_office, _succeeded(order), timestamp=int(time.time()) - 10)
    assert len(store.tickets) == 3


async def test_failed_delivery_can_be_resent_unchanged(
    box_office, store, event, general, monkeypatch,
):
    order = await _pending_order(box_office, event, general, quantity=2)
    _fail_ticket_insert(box_office, monkeypatch, on_call=1)
    body = json.dumps(_succeeded(order))
    ts = int(time.time())
    signature = compute_signature(WEBHOOK_SECRET, ts, body)

    with pytest.raises(DatabaseError):
        await box_office.payments.confirm(body, signature, ts)
    assert store.webhook_events == {}

    result = await box_office.payments.confirm(body, signature, ts)
    assert len(result.tickets) == 2
    assert len(store.tickets) == 2


async def test_resumed_issuance_rejects_a_different_payment(
    box_office, store, event, general, monkeypatch,
):
    order = await _pending_order(box_office, event, general, quantity=2)
    _fail_ticket_insert(box_office, monkeypatch)
    with pytest.raises(DatabaseError):
        await _deliver(box_office, _succeeded(order))

    with pytest.raises(DuplicateConfirmationError):
        await _deliver(box_office, _succeeded(order, payment_id="pi_other"), timestamp=int(time.time()) - 5)
    assert len(store.tickets) == 1


async def test_payment_id_cannot_confirm_two_orders(box_office, store, event, general):
    first = await _pending_order(box_office, event, general, quantity=1)
    second = await _pending_order(box_office, event, general, quantity=1)
    await _deliver(box_office, _succeeded(first, "pi_shared"))

    with pytest.raises(DuplicateConfirmationError):
        await _deliver(box_office, _succeeded(second, "pi_shared"))
    assert store.orders[second.id].status == OrderStatus.PENDING


async def test_wrong_secret_rejected(box_office, event, general):
    order = await _pending_order(box_office, event, general)
    with pytest.raises(SignatureMismatchError):
        await _deliver(box_office, _succeeded(order), secret="not-the-secret")


async def test_missing_headers_rejected(box_office):
    with pytest.raises(SignatureMismatchError):
        await box_office.payments.confirm("{}", None, int(time.time()))
    with pytest.raises(SignatureMismatchError):
        await box_office.payments.confirm("{}", "sha256=abc", None)


async def test_stale_timestamp_rejected(box_office, event, general):
    order = await _pending_order(box_office, event, general)
    with pytest.raises(SignatureMismatchError):
        await _deliver(box_office, _succeeded(order), timestamp=int(time.time()) - 3600)
    assert box_office.metrics.get_counter("payments.succeeded") == 0


async def test_unknown_event_type_is_invalid(box_office):
    with pytest.raises(InvalidSelectionError) as exc:
        await _deliver(box_office, {"type": "payment.disputed", "order_id": str(uuid4())})
    assert exc.value.field == "type"


async def test_unknown_order_not_found(box_office):
    with pytest.raises(ResourceNotFoundError):
        await _deliver(box_office, {"type": "payment.succeeded", "order_id": str(uuid4())})


async def test_failed_payment_releases_inventory(box_office, store, event, general):
    order = await _pending_order(box_office, event, general, quantity=4)
    assert store.ticket_types[general.id].tickets_sold == 4

    result = await _deliver(box_office, {"type": "payment.failed", "order_id": str(order.id)})

    assert result.order.status == OrderStatus.FAILED
    assert result.tickets == []
    assert store.ticket_types[general.id].tickets_sold == 0
    assert box_office.metrics.get_counter("payments.failed") == 1


async def test_refund_voids_tickets_and_releases(box_office, store, event, general):
    order = await _pending_order(box_office, event, general, quantity=3)
    await _deliver(box_office, _succeeded(order))

    result = await _deliver(box_office, {"type": "charge.refunded", "order_id": str(order.id)})

    assert result.order.status == OrderStatus.REFUNDED
    assert all(t.status == TicketStatus.VOIDED for t in store.tickets.values())
    assert store.ticket_types[general.id].tickets_sold == 0
    assert box_office.metrics.get_counter("orders.refunded") == 1


async def test_refund_of_pending_order_is_invalid(box_office, store, event, general):
    order = await _pending_order(box_office, event, general)
    with pytest.raises(InvalidTransitionError):
        await box_office.payments.refund(order.id)
    assert store.orders[order.id].status == OrderStatus.PENDING
    assert store.ticket_types[general.id].tickets_sold == 2


async def test_failed_order_cannot_be_paid(box_office, event, general):
    order = await _pending_order(box_office, event, general)
    await box_office.payments.fail(order.id)
    with pytest.raises(InvalidTransitionError):
        await box_office.payments.mark_paid(order.id, "pi_late")
