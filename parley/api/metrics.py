"""Prometheus Metrics Endpoint.

Exposes the voice gateway metrics (errors, turns, latency, active sessions)
for scraping.
"""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(prefix="/metrics", tags=["observability"])


@router.get("", response_class=Response)
async def prometheus_metrics():
    """
    Expose Prometheus metrics in text format.

    No authentication required (should be secured at infrastructure level).
    """
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
