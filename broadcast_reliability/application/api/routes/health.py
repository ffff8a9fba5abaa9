"""
Health and Metrics Routes

    GET /health    Redis connectivity; 503 when Redis is unreachable
    GET /metrics   Prometheus text format for scraping
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse

from broadcast_reliability.application.api.dependencies import get_service
from broadcast_reliability.broadcasting.service import BroadcastReliabilityService
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(service: BroadcastReliabilityService = Depends(get_service)):
    redis_health = await service.redis.health_check()
    healthy = redis_health.get("status") == "healthy"

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {"redis": redis_health},
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )


@router.get("/metrics")
async def get_prometheus_metrics():
    """
    Expose metrics in Prometheus text format.

    Returned through Response rather than JSON so the exposition format
    and its Content-Type reach the scraper unchanged.
    """
    metrics_collector = get_metrics_collector()
    return Response(
        content=metrics_collector.get_prometheus_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
