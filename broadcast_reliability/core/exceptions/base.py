"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions inherit from.
All specialized exceptions are in their respective themed modules.
"""

from typing import Any


class BroadcastReliabilityError(Exception):
    """
    Base exception for all broadcast reliability errors.

    Attributes:
        message: Error message
        task_id: Broadcast task ID for correlation (if available)
        details: Additional error details (dict)

    Example:
        raise TransportConnectionError(
            "Pub/Sub publish failed",
            task_id="5f0c...",
            details={"channel": "sync_status", "attempt": 2}
        )
    """

    def __init__(
        self, message: str, task_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.task_id = task_id
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, message, task_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "task_id": self.task_id,
            "details": self.details,
        }

    def with_suggestion(self, suggestion: str) -> "BroadcastReliabilityError":
        """Add a suggestion to help operators fix the error."""
        self.details["suggestion"] = suggestion
        return self

    def with_context(self, **context) -> "BroadcastReliabilityError":
        """
        Add additional context to the error details.

        Args:
            **context: Key-value pairs to add to details

        Returns:
            Self (for method chaining)
        """
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        task_id_str = f", task_id='{self.task_id}'" if self.task_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{task_id_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        task_id: str | None = None,
        **details
    ) -> "BroadcastReliabilityError":
        """
        Create an error of this class from another exception.

        Useful for wrapping third-party exceptions with additional context.

        Args:
            exc: Original exception to wrap
            message: Custom message (defaults to original exception message)
            task_id: Task ID for correlation
            **details: Additional context to include

        Returns:
            New instance with the wrapped exception details

        Example:
            >>> try:
            ...     await redis.ping()
            ... except redis.ConnectionError as e:
            ...     raise CacheConnectionError.from_exception(e, host="localhost")
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, task_id=task_id, details=error_details)


class ConfigurationError(BroadcastReliabilityError):
    """Raised when configuration is invalid or missing."""
    pass
