"""Webhooks - payment provider notifications.

Invariants:
    - The raw body is passed through untouched: the HMAC covers exact bytes
    - Rate limited by the webhook policy before any verification work
    - Signature and timestamp come from X-Webhook-Signature / X-Webhook-Timestamp
"""

import logging

from fastapi import APIRouter, Depends, Request

from boxoffice.api.deps import client_ip, client_key, get_box_office
from boxoffice.schemas.webhooks import WebhookAck
from boxoffice.services.container import BoxOffice

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "x-webhook-signature"
TIMESTAMP_HEADER = "x-webhook-timestamp"


def _timestamp(raw: str | None) -> int | None:
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


@router.post("/payment", response_model=WebhookAck)
async def payment_webhook(
    request: Request, box_office: BoxOffice = Depends(get_box_office),
):
    """Verify and apply one payment event."""
    await box_office.limiters["webhook"].enforce(
        client_key(request), {"endpoint": "payment_webhook"},
    )
    body = (await request.body()).decode("utf-8", errors="replace")
    result = await box_office.payments.confirm(
        body,
        request.headers.get(SIGNATURE_HEADER),
        _timestamp(request.headers.get(TIMESTAMP_HEADER)),
        source_ip=client_ip(request),
    )
    return WebhookAck(
        type=result.event_type,
        order_id=result.order.id,
        order_status=result.order.status.value,
        tickets_issued=len(result.tickets),
    )
