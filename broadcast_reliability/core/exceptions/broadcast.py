"""
Broadcast Delivery Exceptions

Exceptions raised while resolving targets, validating payloads, pushing
frames to the transport and managing dead-letter records. The outcome
classifier maps these onto error kinds.
"""

from broadcast_reliability.core.exceptions.base import BroadcastReliabilityError


class BroadcastError(BroadcastReliabilityError):
    """Base exception for broadcast delivery errors."""
    pass


class TransportError(BroadcastError):
    """Raised when the transport rejects a push."""
    pass


class TransportConnectionError(TransportError):
    """Raised when the transport is unreachable or the push timed out."""
    pass


class TargetNotFoundError(BroadcastError):
    """
    Raised when the broadcast target no longer exists.

    Never retried: the target will not come back.
    """

    def __init__(self, target_type: str, target_id: str, task_id: str | None = None):
        super().__init__(
            f"{target_type}#{target_id} not found",
            task_id=task_id,
            details={"target_type": target_type, "target_id": target_id},
        )
        self.target_type = target_type
        self.target_id = target_id


class PayloadValidationError(BroadcastError):
    """Raised when a payload breaks the size, depth, string or array limits."""
    pass


class DeadLetterStoreError(BroadcastError):
    """Raised when the dead-letter store cannot complete an operation."""
    pass


class DeadLetterRecordNotFoundError(DeadLetterStoreError):
    """Raised when a dead-letter record ID does not exist."""
    pass
