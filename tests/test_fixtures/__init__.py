"""
Test Fixtures Package

Shared test doubles and factories.
"""

from .record_factory import RecordFactory
from .redis_fake import FakeClock, InMemoryRedis

__all__ = ["FakeClock", "InMemoryRedis", "RecordFactory"]
