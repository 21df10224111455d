"""Webhook Schemas - payment provider notifications.

Invariants:
    - Parsed only after the signature over the raw body has been verified
    - type is one of the handled event types; anything else is rejected

Design Decisions:
    - Literal type over str enum: Pydantic handles validation natively
"""

from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

PaymentEventType = Literal["payment.succeeded", "payment.failed", "charge.refunded"]


class PaymentWebhookPayload(BaseModel):
    type: PaymentEventType
    order_id: UUID
    payment_id: str | None = Field(None, max_length=255)


class WebhookAck(BaseModel):
    received: bool = True
    type: str
    order_id: UUID
    order_status: str
    tickets_issued: int = 0
