"""
Broadcast Routes

Operational endpoints for the broadcast reliability layer.

ENDPOINTS:
----------
    POST /broadcasts                          queue a broadcast
    GET  /broadcasts/status                   lane sizes, pending dead letters, hourly metrics
    GET  /broadcasts/metrics                  windowed delivery analytics
    GET  /broadcasts/dashboard                last hour vs last 24 hours
    GET  /broadcasts/failed                   recent dead letters
    GET  /broadcasts/failed/{id}              one dead letter
    POST /broadcasts/failed/{id}/retry        manual retry
    GET  /broadcasts/stats                    recovery statistics
    POST /broadcasts/recovery/run             run a recovery sweep now
    POST /broadcasts/housekeeping/run         run housekeeping now

ERRORS:
-------
    DeadLetterRecordNotFoundError → 404
    RateLimitExceededError        → 429 with Retry-After
    QueueError / CacheError       → 503 (see application/app.py)
"""

import hashlib
from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Request, status

from broadcast_reliability.application.api.dependencies import get_service
from broadcast_reliability.application.api.models import (
    BroadcastStatusResponse,
    EnqueueBroadcastRequest,
    EnqueueBroadcastResponse,
    FailedBroadcastListResponse,
    FailedBroadcastResponse,
    RetryFailedBroadcastResponse,
    SweepResponse,
)
from broadcast_reliability.broadcasting.dispatcher import PriorityDispatcher
from broadcast_reliability.broadcasting.housekeeping import HOUSEKEEPING_JOB
from broadcast_reliability.broadcasting.recovery import RECOVERY_JOB
from broadcast_reliability.broadcasting.service import BroadcastReliabilityService
from broadcast_reliability.core.config.constants import ErrorKind, RecoveryStatus
from broadcast_reliability.core.logging.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/broadcasts", tags=["Broadcasts"])


def get_caller_identifier(request: Request) -> str:
    """
    Name the caller for its rate limit.

    Priority: X-User-ID header > Authorization token hash > client address
    """
    user_id = request.headers.get("X-User-ID")
    if user_id:
        return f"user:{user_id}"

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token_hash = hashlib.sha256(auth_header.encode()).hexdigest()[:16]
        return f"token:{token_hash}"

    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


@router.post(
    "",
    response_model=EnqueueBroadcastResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue(
    request: EnqueueBroadcastRequest,
    http_request: Request,
    service: BroadcastReliabilityService = Depends(get_service),
):
    """Queue a broadcast on the lane for its priority."""
    priority = PriorityDispatcher.resolve_priority(request.priority)
    task_id = await service.dispatcher.enqueue(
        request.channel,
        request.target_type,
        request.target_id,
        request.data,
        priority,
        identifier=get_caller_identifier(http_request),
    )
    return EnqueueBroadcastResponse(
        task_id=task_id,
        priority=priority.value,
        lane=service.lanes.lane_for(priority).name,
    )


@router.get("/status", response_model=BroadcastStatusResponse)
async def get_status(service: BroadcastReliabilityService = Depends(get_service)):
    return await service.status()


@router.get("/metrics")
async def get_metrics(
    window_hours: int = Query(default=1, ge=1, le=168),
    channel: str | None = Query(default=None),
    service: BroadcastReliabilityService = Depends(get_service),
):
    """Delivery counters and rates for the last ``window_hours`` hours."""
    return await service.analytics.get_metrics(window_hours=window_hours, channel=channel)


@router.get("/dashboard")
async def get_dashboard(service: BroadcastReliabilityService = Depends(get_service)):
    return await service.analytics.get_dashboard_metrics()


@router.get("/failed", response_model=FailedBroadcastListResponse)
async def list_failed(
    limit: int = Query(default=20, ge=1, le=500),
    record_status: RecoveryStatus | None = Query(default=None, alias="status"),
    error_kind: ErrorKind | None = Query(default=None),
    service: BroadcastReliabilityService = Depends(get_service),
):
    """Most recently failed broadcasts first."""
    records = await service.store.recent(limit=limit, status=record_status, error_kind=error_kind)
    items = [FailedBroadcastResponse.from_record(record) for record in records]
    return FailedBroadcastListResponse(items=items, count=len(items))


@router.get("/failed/{record_id}", response_model=FailedBroadcastResponse)
async def get_failed(record_id: int, service: BroadcastReliabilityService = Depends(get_service)):
    return FailedBroadcastResponse.from_record(await service.store.get(record_id))


@router.post("/failed/{record_id}/retry", response_model=RetryFailedBroadcastResponse)
async def retry_failed(record_id: int, service: BroadcastReliabilityService = Depends(get_service)):
    """
    Replay one dead letter now.

    Accepts pending and permanently skipped records. A record whose target
    no longer exists is marked record_not_found instead of being pushed.
    """
    recovered = await service.retry_failed(record_id)
    record = await service.store.get(record_id)

    logger.info(
        "Manual retry requested",
        record_id=record_id,
        recovered=recovered,
        status=record.status.value,
    )
    return RetryFailedBroadcastResponse(
        recovered=recovered, record=FailedBroadcastResponse.from_record(record)
    )


@router.get("/stats")
async def get_recovery_stats(
    hours: int = Query(default=24, ge=1, le=24 * 30),
    service: BroadcastReliabilityService = Depends(get_service),
):
    return await service.store.recovery_stats(period=timedelta(hours=hours))


@router.post("/recovery/run", response_model=SweepResponse)
async def run_recovery(service: BroadcastReliabilityService = Depends(get_service)):
    return SweepResponse(job=RECOVERY_JOB, stats=await service.recovery.run())


@router.post("/housekeeping/run", response_model=SweepResponse)
async def run_housekeeping(service: BroadcastReliabilityService = Depends(get_service)):
    return SweepResponse(job=HOUSEKEEPING_JOB, stats=await service.housekeeping.run())
