"""
Collaborator Protocols

Abstract protocols for the external systems the delivery pipeline talks
to: the transport that pushes frames to connected clients, the resolver
that checks a broadcast target still exists, and the lane introspector
that reports queue depth.

Architectural Decision: Protocol-based abstraction
- The worker and recovery sweeper depend on these, never on Redis Pub/Sub
  or a concrete model layer
- Tests substitute AsyncMock objects with the same shape
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Transport(Protocol):
    """
    Pushes a payload to every client subscribed to a target.

    Implementations:
    - RedisPubSubTransport: publishes JSON frames on a Redis channel
    """

    async def push(
        self,
        channel: str,
        target_type: str,
        target_id: str,
        payload: dict[str, Any],
    ) -> None:
        """
        Deliver one payload.

        Raises:
            TransportConnectionError: When the transport is unreachable
            TransportError: When the transport rejects the frame
        """
        ...


@runtime_checkable
class TargetResolver(Protocol):
    """
    Confirms that a broadcast target still exists.

    Implementations:
    - RegistryTargetResolver: async lookup per target type
    """

    async def resolve(self, target_type: str, target_id: str) -> Any:
        """
        Return the target (or a truthy handle for it).

        Raises:
            TargetNotFoundError: When the target is gone or the type is unknown
        """
        ...


@runtime_checkable
class LaneIntrospector(Protocol):
    """Reports the depth of every priority lane."""

    async def lane_sizes(self) -> dict[str, int]:
        """Return {lane_name: depth}."""
        ...
