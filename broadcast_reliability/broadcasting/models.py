"""
Broadcast Domain Models

- BroadcastTask: one unit of delivery work, carried on a lane
- FailedBroadcastRecord: durable dead-letter entry
- Success / Retry / DeadLetter: result of a single delivery attempt
"""

import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from typing import Any

import orjson

from broadcast_reliability.core.config.constants import ErrorKind, Priority, RecoveryStatus
from broadcast_reliability.core.exceptions import PayloadValidationError


def _new_task_id() -> str:
    return uuid.uuid4().hex


@dataclass
class BroadcastTask:
    """
    A broadcast waiting for (or undergoing) delivery.

    ``attempt`` is 1-based; a retry is the same task with ``attempt + 1``.
    """

    channel: str
    target_type: str
    target_id: str
    payload: dict[str, Any]
    priority: Priority = Priority.MEDIUM
    attempt: int = 1
    task_id: str = field(default_factory=_new_task_id)
    enqueued_at: float = field(default_factory=time.time)

    REQUIRED_FIELDS = ("channel", "target_type", "target_id", "payload")

    def next_attempt(self) -> "BroadcastTask":
        return replace(self, attempt=self.attempt + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "channel": self.channel,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "payload": self.payload,
            "priority": self.priority.value,
            "attempt": self.attempt,
            "enqueued_at": self.enqueued_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BroadcastTask":
        """
        Rebuild a task from a decoded lane message.

        Raises:
            PayloadValidationError: If a required field is missing or malformed
        """
        missing = [name for name in cls.REQUIRED_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise PayloadValidationError(
                f"Lane message missing fields: {', '.join(missing)}",
                task_id=data.get("task_id") or None,
                details={"missing": missing},
            )

        payload = data["payload"]
        if isinstance(payload, str):
            try:
                payload = orjson.loads(payload)
            except orjson.JSONDecodeError as e:
                raise PayloadValidationError(
                    "Lane message payload is not valid JSON", task_id=data.get("task_id")
                ) from e
        if not isinstance(payload, dict):
            raise PayloadValidationError(
                "Broadcast payload must be a JSON object", task_id=data.get("task_id")
            )

        try:
            attempt = int(data.get("attempt") or 1)
            enqueued_at = float(data.get("enqueued_at") or time.time())
        except (TypeError, ValueError) as e:
            raise PayloadValidationError(
                "Lane message has malformed attempt metadata", task_id=data.get("task_id")
            ) from e

        return cls(
            channel=str(data["channel"]),
            target_type=str(data["target_type"]),
            target_id=str(data["target_id"]),
            payload=payload,
            priority=Priority.normalize(data.get("priority")) or Priority.MEDIUM,
            attempt=max(attempt, 1),
            task_id=str(data.get("task_id") or _new_task_id()),
            enqueued_at=enqueued_at,
        )


@dataclass
class FailedBroadcastRecord:
    """
    Durable record of a broadcast that could not be delivered.

    Stored as a Redis hash; ``payload`` is kept as a dict in memory and as
    JSON in storage.
    """

    channel: str
    target_type: str
    target_id: str
    payload: dict[str, Any]
    priority: Priority
    error_kind: ErrorKind
    error_message: str
    failed_at: float = field(default_factory=time.time)
    retry_count: int = 0
    task_id: str | None = None
    status: RecoveryStatus = RecoveryStatus.PENDING
    recovery_attempts: int = 0
    recovered_at: float | None = None
    recovery_notes: str | None = None
    updated_at: float | None = None
    id: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RecoveryStatus.RECOVERED, RecoveryStatus.PERMANENTLY_SKIPPED)

    def to_task(self) -> BroadcastTask:
        """Task used to replay this record through the worker."""
        return BroadcastTask(
            channel=self.channel,
            target_type=self.target_type,
            target_id=self.target_id,
            payload=self.payload,
            priority=self.priority,
            attempt=self.retry_count + 1,
            task_id=self.task_id or _new_task_id(),
        )

    def to_hash(self) -> dict[str, str]:
        """Flatten into Redis hash fields; None values are omitted."""
        fields = {
            "id": self.id,
            "channel": self.channel,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "payload": orjson.dumps(self.payload).decode("utf-8"),
            "priority": self.priority.value,
            "error_kind": self.error_kind.value,
            "error_message": self.error_message,
            "failed_at": repr(self.failed_at),
            "retry_count": self.retry_count,
            "task_id": self.task_id,
            "status": self.status.value,
            "recovery_attempts": self.recovery_attempts,
            "recovered_at": None if self.recovered_at is None else repr(self.recovered_at),
            "recovery_notes": self.recovery_notes,
            "updated_at": None if self.updated_at is None else repr(self.updated_at),
        }
        return {key: str(value) for key, value in fields.items() if value is not None}

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "FailedBroadcastRecord":
        def _optional_float(name: str) -> float | None:
            value = data.get(name)
            return float(value) if value not in (None, "") else None

        try:
            payload = orjson.loads(data.get("payload") or "{}")
        except orjson.JSONDecodeError:
            payload = {"raw": data.get("payload")}

        return cls(
            id=int(data["id"]) if data.get("id") else None,
            channel=data.get("channel", ""),
            target_type=data.get("target_type", ""),
            target_id=data.get("target_id", ""),
            payload=payload if isinstance(payload, dict) else {"raw": payload},
            priority=Priority.normalize(data.get("priority")) or Priority.MEDIUM,
            error_kind=ErrorKind(data.get("error_kind", ErrorKind.UNKNOWN.value)),
            error_message=data.get("error_message", ""),
            failed_at=float(data.get("failed_at") or 0.0),
            retry_count=int(data.get("retry_count") or 0),
            task_id=data.get("task_id") or None,
            status=RecoveryStatus(data.get("status", RecoveryStatus.PENDING.value)),
            recovery_attempts=int(data.get("recovery_attempts") or 0),
            recovered_at=_optional_float("recovered_at"),
            recovery_notes=data.get("recovery_notes") or None,
            updated_at=_optional_float("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        data["error_kind"] = self.error_kind.value
        data["status"] = self.status.value
        return data


# =============================================================================
# Attempt outcomes
# =============================================================================


@dataclass(frozen=True)
class Success:
    duration: float
    attempt: int


@dataclass(frozen=True)
class Retry:
    delay: float
    error_kind: ErrorKind
    error_message: str


@dataclass(frozen=True)
class DeadLetter:
    error_kind: ErrorKind
    error_message: str
    retry_count: int
    record: FailedBroadcastRecord | None = None


AttemptOutcome = Success | Retry | DeadLetter
