"""Tickets - gate scanning.

Invariants:
    - Every outcome, including rejections, is a 200 with a ScanResponse
    - Camera scans use the scan policy, typed-in credentials the manual_entry
      policy; both keyed by scanner id when given, else by caller IP
"""

import logging

from fastapi import APIRouter, Depends, Request

from boxoffice.api.deps import client_ip, get_box_office
from boxoffice.schemas.tickets import ScanRequest, ScanResponse, TicketOut
from boxoffice.services.container import BoxOffice
from boxoffice.services.rate_limiter import get_client_identifier

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/tickets", tags=["tickets"])


@router.post("/scan", response_model=ScanResponse)
async def scan_ticket(
    body: ScanRequest,
    request: Request,
    box_office: BoxOffice = Depends(get_box_office),
):
    """Validate a presented credential and admit it at most once."""
    policy = "manual_entry" if body.entry_method == "manual" else "scan"
    key = get_client_identifier(ip=client_ip(request), user_id=body.scanner_id)
    await box_office.limiters[policy].enforce(key, {"endpoint": "scan"})

    result = await box_office.issuer.scan(body.token, body.signature, body.scanner_id)
    return ScanResponse(
        outcome=result.outcome.value,
        valid=result.valid,
        message=result.message,
        ticket=TicketOut.from_record(result.ticket) if result.ticket else None,
    )
