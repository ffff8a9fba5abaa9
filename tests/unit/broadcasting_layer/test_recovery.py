"""
Unit Tests for the Recovery Sweeper
"""

from unittest.mock import AsyncMock, patch

import pytest

from broadcast_reliability.broadcasting.recovery import RECOVERY_JOB, RecoverySweeper, summarize
from broadcast_reliability.core.config.constants import ErrorKind, Priority, RecoveryStatus
from broadcast_reliability.core.exceptions import (
    CacheConnectionError,
    PayloadValidationError,
    TransportConnectionError,
)


@pytest.mark.unit
class TestRecoverySweeper:
    @pytest.mark.asyncio
    async def test_empty_sweep(self, recovery, analytics):
        stats = await recovery.run()

        assert stats == {"attempted": 0, "successful": 0, "failed": 0, "skipped": 0}
        assert (await analytics.last_run(RECOVERY_JOB))["attempted"] == 0

    @pytest.mark.asyncio
    async def test_failed_retries_are_counted(self, recovery, store, records, clock, transport):
        transport.push.side_effect = TransportConnectionError("still down")
        await store.create(records.record(failed_at=clock()))

        stats = await recovery.run()

        assert stats == {"attempted": 1, "successful": 0, "failed": 1, "skipped": 0}

    @pytest.mark.asyncio
    async def test_batch_limit(self, store, analytics, records, clock):
        for index in range(5):
            await store.create(records.record(failed_at=clock() - index, task_id=f"t-{index}"))

        stats = await RecoverySweeper(store, analytics, batch_limit=3, pacing_seconds=0).run()

        assert stats["attempted"] == 3
        assert await store.pending_count() == 2

    @pytest.mark.asyncio
    async def test_pacing_between_chunks(self, store, analytics, records, clock):
        for index in range(5):
            await store.create(records.record(failed_at=clock() - index, task_id=f"t-{index}"))
        sweeper = RecoverySweeper(store, analytics, pacing_every=2, pacing_seconds=0.05)

        with patch("broadcast_reliability.broadcasting.recovery.asyncio.sleep", new=AsyncMock()) as sleep:
            await sweeper.run()

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.05)

    @pytest.mark.asyncio
    async def test_one_bad_record_does_not_stop_sweep(self, recovery, store, records, clock):
        first = await store.create(records.record(failed_at=clock() - 20, priority=Priority.CRITICAL))
        await store.create(records.record(failed_at=clock() - 10, priority=Priority.LOW))
        original_retry = store.retry

        async def _retry(record, manual=False):
            if record.id == first.id:
                raise PayloadValidationError("corrupt payload")
            return await original_retry(record, manual=manual)

        store.retry = _retry

        stats = await recovery.run()

        assert stats == {"attempted": 2, "successful": 1, "failed": 1, "skipped": 0}
        stored = await store.get(first.id)
        assert stored.error_kind is ErrorKind.VALIDATION
        assert stored.status is RecoveryStatus.PERMANENTLY_SKIPPED

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self, recovery, store):
        store.ready_for_retry = AsyncMock(side_effect=CacheConnectionError("down"))

        with pytest.raises(CacheConnectionError):
            await recovery.run()

    def test_summarize(self):
        assert summarize({"attempted": 3, "successful": 2, "skipped": 1}) == (
            "attempted=3 successful=2 failed=0 skipped=1"
        )
