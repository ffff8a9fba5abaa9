"""
Priority Dispatcher

Entry point for producers. Wraps a broadcast in a BroadcastTask and writes it
to the lane matching its priority:

    critical → critical (weight 6)
    high     → high     (weight 4)
    medium   → default  (weight 2)
    low      → low      (weight 1)

Targets are not checked here; the worker resolves them at delivery time.
A rate limiter, when given, is charged before anything else happens, so a
rejected broadcast is neither counted as queued nor written to a lane.
"""

from typing import Any

from broadcast_reliability.broadcasting.analytics import BroadcastAnalytics, get_analytics
from broadcast_reliability.broadcasting.models import BroadcastTask
from broadcast_reliability.broadcasting.rate_limiter import BroadcastRateLimiter
from broadcast_reliability.core.config.constants import Priority, Stage
from broadcast_reliability.core.logging.logger import get_logger
from broadcast_reliability.infrastructure.message_queue.priority_lanes import (
    PriorityLanes,
    get_priority_lanes,
)
from broadcast_reliability.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


class PriorityDispatcher:
    """
    Usage:
        dispatcher = PriorityDispatcher()
        task_id = await dispatcher.enqueue(
            "sync_status", "sync_session", 42, {"progress": 80}, priority="high"
        )
    """

    def __init__(
        self,
        lanes: PriorityLanes | None = None,
        analytics: BroadcastAnalytics | None = None,
        rate_limiter: BroadcastRateLimiter | None = None,
    ):
        self._lanes = lanes or get_priority_lanes()
        self._analytics = analytics or get_analytics()
        self._rate_limiter = rate_limiter
        self._metrics = get_metrics_collector()

    @staticmethod
    def resolve_priority(priority: Priority | str | None) -> Priority:
        """Unknown or missing priorities fall back to medium."""
        resolved = Priority.normalize(priority)
        if resolved is None:
            logger.warning(
                "Unknown broadcast priority, using medium",
                stage=Stage.DISPATCH,
                priority=str(priority),
            )
            return Priority.MEDIUM
        return resolved

    async def enqueue(
        self,
        channel: str,
        target_type: str,
        target_id: Any,
        payload: dict[str, Any],
        priority: Priority | str | None = Priority.MEDIUM,
        identifier: str | None = None,
    ) -> str:
        """
        Queue one broadcast.

        ``identifier`` names the caller for its per-priority rate limit.

        The queued event is recorded before the lane write, so it is counted
        even when the write fails.

        Returns:
            task_id of the queued task

        Raises:
            RateLimitExceededError: A token bucket is empty
            QueueError: The lane write failed
        """
        resolved = self.resolve_priority(priority)
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire(resolved, identifier)

        task = BroadcastTask(
            channel=channel,
            target_type=target_type,
            target_id=str(target_id),
            payload=payload,
            priority=resolved,
        )

        await self._analytics.record_queued(channel, target_type, resolved)

        lane = self._lanes.lane_for(resolved)
        message_id = await self._lanes.produce(resolved, task.to_dict())
        self._metrics.record_enqueued(resolved.value, lane.name)

        logger.info(
            "Broadcast enqueued",
            stage=Stage.DISPATCH,
            task_id=task.task_id,
            channel=channel,
            target_type=target_type,
            target_id=task.target_id,
            priority=resolved.value,
            lane=lane.name,
            message_id=message_id,
        )
        return task.task_id


async def enqueue_broadcast(
    channel: str,
    target_type: str,
    target_id: Any,
    data: dict[str, Any],
    priority: Priority | str | None = Priority.MEDIUM,
) -> None:
    """
    Queue a broadcast through the process-wide dispatcher.

    Raises:
        RateLimitExceededError: The global token bucket is empty
        QueueError: The lane write failed
    """
    from broadcast_reliability.broadcasting.service import get_broadcast_service

    await get_broadcast_service().dispatcher.enqueue(channel, target_type, target_id, data, priority)
