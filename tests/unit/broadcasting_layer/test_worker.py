"""
Unit Tests for the Broadcast Worker

Attempt outcomes, backoff and the runtime-level dead letters.
"""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from broadcast_reliability.broadcasting.models import DeadLetter, Retry, Success
from broadcast_reliability.broadcasting.worker import BroadcastWorker
from broadcast_reliability.core.config.constants import LANE_TABLE, ErrorKind, Priority, RecoveryStatus
from broadcast_reliability.core.exceptions import (
    CacheConnectionError,
    PayloadValidationError,
    TransportConnectionError,
)
from broadcast_reliability.infrastructure.message_queue.priority_lanes import LaneMessage


@pytest.mark.unit
class TestBackoff:
    @pytest.mark.parametrize(
        "priority, attempt, low, high",
        [
            (Priority.CRITICAL, 1, 0.5, 0.75),
            (Priority.HIGH, 1, 1.0, 1.5),
            (Priority.MEDIUM, 1, 2.0, 3.0),
            (Priority.MEDIUM, 3, 8.0, 12.0),
            (Priority.LOW, 2, 8.0, 12.0),
        ],
    )
    def test_exponential_with_jitter(self, worker, priority, attempt, low, high):
        for _ in range(50):
            delay = worker.calculate_backoff_delay(priority, attempt)
            assert low <= delay <= high

    def test_capped(self, pipeline, store, analytics):
        worker = BroadcastWorker(pipeline, store, analytics, backoff_max=10, rng=random.Random(1))

        assert worker.calculate_backoff_delay(Priority.LOW, 8) == 10


@pytest.mark.unit
class TestAttempt:
    @pytest.mark.asyncio
    async def test_success(self, worker, records, transport, analytics):
        outcome = await worker.attempt(records.task(priority=Priority.CRITICAL))

        assert isinstance(outcome, Success)
        assert outcome.attempt == 1
        transport.push.assert_awaited_once()
        assert (await analytics.get_metrics())["success"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [TransportConnectionError("reset"), RuntimeError("boom")])
    async def test_transient_failure_retries(self, worker, records, transport, store, error):
        transport.push.side_effect = error

        outcome = await worker.attempt(records.task(attempt=2))

        assert isinstance(outcome, Retry)
        assert 4.0 <= outcome.delay <= 6.0
        assert await store.recent() == []

    @pytest.mark.asyncio
    async def test_last_attempt_exhausts(self, worker, records, transport, store):
        transport.push.side_effect = TransportConnectionError("reset")

        outcome = await worker.attempt(records.task(attempt=worker.max_attempts, task_id="t-9"))

        assert isinstance(outcome, DeadLetter)
        assert outcome.error_kind is ErrorKind.RETRY_EXHAUSTED
        assert outcome.retry_count == worker.max_attempts
        stored = await store.get(outcome.record.id)
        assert stored.task_id == "t-9"
        assert stored.status is RecoveryStatus.PENDING
        assert stored.error_message == "reset"

    @pytest.mark.asyncio
    async def test_missing_target_dead_letters_immediately(self, worker, records, transport):
        outcome = await worker.attempt(records.task(target_id="99"))

        assert isinstance(outcome, DeadLetter)
        assert outcome.error_kind is ErrorKind.RECORD_NOT_FOUND
        assert outcome.retry_count == 0
        assert outcome.record.status is RecoveryStatus.PERMANENTLY_SKIPPED
        transport.push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_payload_dead_letters_immediately(self, worker, records, transport):
        outcome = await worker.attempt(
            records.task(payload={"html": "<script>alert(1)</script>"}, attempt=3)
        )

        assert outcome.error_kind is ErrorKind.VALIDATION
        assert outcome.retry_count == 2
        transport.push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_push_timeout_is_connection_failure(self, pipeline, store, analytics, records, transport):
        async def _hang(*args):
            await asyncio.sleep(10)

        transport.push.side_effect = _hang
        pipeline._push_timeout = 0.01
        worker = BroadcastWorker(pipeline, store, analytics, rng=random.Random(0))

        outcome = await worker.attempt(records.task())

        assert isinstance(outcome, Retry)
        assert outcome.error_kind is ErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, worker, records, store):
        store.create = AsyncMock(side_effect=CacheConnectionError("down"))

        with pytest.raises(CacheConnectionError):
            await worker.attempt(records.task(target_id="99"))


@pytest.mark.unit
class TestRuntimeDeadLetters:
    def _message(self, data, fields=None, deliveries=3):
        return LaneMessage(
            lane=LANE_TABLE[Priority.HIGH],
            message_id="7-0",
            fields=fields or {},
            data=data,
            deliveries=deliveries,
        )

    @pytest.mark.asyncio
    async def test_job_death_from_snapshot(self, worker, records, store):
        task = records.task(priority=Priority.HIGH, attempt=2, task_id="t-1")

        record = await worker.handle_job_death(self._message(task.to_dict()))

        assert record.error_kind is ErrorKind.JOB_DEATH
        assert record.task_id == "t-1"
        assert record.retry_count == 1
        assert record.priority is Priority.HIGH
        assert record.payload == {"progress": 80}
        assert "3 times" in record.error_message
        # Kept for an operator; never auto-recovered
        assert record.status is RecoveryStatus.PENDING
        assert await store.ready_for_retry() == []

    @pytest.mark.asyncio
    async def test_invalid_message_keeps_raw_fields(self, worker):
        fields = {"channel": "sync_status", "payload": "{broken"}
        message = self._message({"channel": "sync_status", "payload": "{broken"}, fields=fields)

        record = await worker.handle_invalid_message(message, PayloadValidationError("bad message"))

        assert record.error_kind is ErrorKind.VALIDATION
        assert record.payload == {"raw": fields}
        assert record.task_id == "lane:high:7-0"
        assert record.priority is Priority.MEDIUM
        assert record.status is RecoveryStatus.PERMANENTLY_SKIPPED
