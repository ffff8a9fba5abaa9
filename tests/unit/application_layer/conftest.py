"""
Fixtures for the API tests.

The app is built with create_app() and its service dependency is replaced
by one wired to the in-memory Redis. TestClient is used without a context
manager so the lifespan (which connects to the real Redis) never runs.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from broadcast_reliability.application.api.dependencies import get_service
from broadcast_reliability.application.app import create_app
from broadcast_reliability.broadcasting.service import BroadcastReliabilityService


@pytest.fixture
def service(redis, transport, resolver):
    service = BroadcastReliabilityService(redis_client=redis, transport=transport, resolver=resolver)
    asyncio.run(service.lanes.initialize())
    return service


@pytest.fixture
def client(service):
    app = create_app()
    app.dependency_overrides[get_service] = lambda: service
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def seed(service):
    """Create dead-letter records through the service's store."""

    def _seed(*records):
        return [asyncio.run(service.store.create(record)) for record in records]

    return _seed


@pytest.fixture
def failing_transport(transport):
    transport.push = AsyncMock(side_effect=ConnectionError("pubsub down"))
    return transport
