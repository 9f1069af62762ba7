"""
Prometheus metrics endpoint.

GET /metrics
Returns Prometheus-formatted metrics (HTTP RED, LLM calls, routing, retries,
turn outcomes, circuit breakers, process resources) for scraping.
"""
from fastapi import APIRouter, Response
from fastapi.responses import PlainTextResponse

from dispatch_ai.core.metrics import get_metrics, get_metrics_content_type
from dispatch_ai.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.get("", response_class=PlainTextResponse)
async def metrics():
    """
    Prometheus metrics endpoint.

    No authentication required (standard Prometheus practice).
    """
    metrics_data = get_metrics()
    logger.debug("metrics_scraped", size_bytes=len(metrics_data))
    return Response(
        content=metrics_data,
        media_type=get_metrics_content_type(),
    )
