"""Metrics - text exposition of the process metrics registry."""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from boxoffice.api.deps import get_box_office
from boxoffice.services.container import BoxOffice

router = APIRouter(prefix="/api/v1/metrics", tags=["metrics"])


@router.get("", response_class=PlainTextResponse)
async def export_metrics(box_office: BoxOffice = Depends(get_box_office)):
    return PlainTextResponse(
        box_office.metrics.to_prometheus(),
        media_type="text/plain; version=0.0.4",
    )


@router.get("/slow-queries")
async def slow_queries(box_office: BoxOffice = Depends(get_box_office)):
    """Aggregated slow reads, slowest average first."""
    return [
        {
            "query_hash": s.query_hash,
            "query_text": s.query_text,
            "source": s.source,
            "count": s.count,
            "avg_ms": round(s.avg_ms, 2),
            "max_ms": round(s.max_ms, 2),
            "min_ms": round(s.min_ms, 2),
            "last_seen": s.last_seen.isoformat(),
        }
        for s in box_office.query_guard.slow_log.stats()
    ]
