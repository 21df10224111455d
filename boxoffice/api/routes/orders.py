"""Orders - checkout endpoint.

Invariants:
    - The order rate-limit policy is applied by CheckoutService, keyed by caller
    - Selection is validated here (parse_selection) before any service call
    - Response prices are the stored ones, whatever the client posted
"""

import logging

from fastapi import APIRouter, Depends, Request, status

from boxoffice.api.deps import client_key, get_box_office
from boxoffice.schemas.checkout import CheckoutCreate, OrderResponse, parse_selection
from boxoffice.services.container import BoxOffice

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/orders", tags=["orders"])


@router.post(
    "", response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_order(
    body: CheckoutCreate,
    request: Request,
    box_office: BoxOffice = Depends(get_box_office),
):
    """Reserve inventory and create a pending order."""
    selection = parse_selection(body.selection)
    result = await box_office.checkout.checkout(
        body.event_id,
        selection,
        body.purchaser_email,
        purchaser_name=body.purchaser_name,
        promo=box_office.resolve_promo(body.promo_code),
        metadata=body.metadata,
        client_key=client_key(request),
    )
    return OrderResponse.from_record(result.order)
