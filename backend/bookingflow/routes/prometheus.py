"""
Prometheus metrics endpoint.

Public, as is standard for Prometheus scraping. Exposes the counters and
latency histograms recorded by the booking pipeline.
"""

from fastapi import APIRouter, Response

from ..monitoring.prometheus_metrics import prometheus_metrics

router = APIRouter()


@router.get("/metrics", include_in_schema=False, response_class=Response, response_model=None)
async def get_prometheus_metrics() -> Response:
    """Expose Prometheus metrics for scraping."""
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )
