"""
Factories for broadcast tasks and dead-letter records.
"""

from broadcast_reliability.broadcasting.models import BroadcastTask, FailedBroadcastRecord
from broadcast_reliability.core.config.constants import ErrorKind, Priority, RecoveryStatus


class RecordFactory:
    """Builds tasks and records with sensible defaults."""

    @staticmethod
    def task(
        channel: str = "sync_status",
        target_type: str = "sync_session",
        target_id: str = "42",
        payload: dict | None = None,
        priority: Priority = Priority.MEDIUM,
        attempt: int = 1,
        task_id: str | None = None,
    ) -> BroadcastTask:
        task = BroadcastTask(
            channel=channel,
            target_type=target_type,
            target_id=target_id,
            payload=payload if payload is not None else {"progress": 80},
            priority=priority,
            attempt=attempt,
        )
        if task_id is not None:
            task.task_id = task_id
        return task

    @staticmethod
    def record(
        failed_at: float,
        priority: Priority = Priority.MEDIUM,
        error_kind: ErrorKind = ErrorKind.CONNECTION,
        status: RecoveryStatus = RecoveryStatus.PENDING,
        target_id: str = "42",
        task_id: str | None = None,
        retry_count: int = 0,
    ) -> FailedBroadcastRecord:
        return FailedBroadcastRecord(
            channel="sync_status",
            target_type="sync_session",
            target_id=target_id,
            payload={"progress": 80},
            priority=priority,
            error_kind=error_kind,
            error_message="push failed",
            failed_at=failed_at,
            retry_count=retry_count,
            task_id=task_id,
            status=status,
        )
