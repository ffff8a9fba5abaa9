"""
Unit Tests for the Broadcast Domain Models
"""

import pytest

from broadcast_reliability.broadcasting.models import BroadcastTask, FailedBroadcastRecord
from broadcast_reliability.core.config.constants import ErrorKind, Priority, RecoveryStatus
from broadcast_reliability.core.exceptions import PayloadValidationError
from broadcast_reliability.infrastructure.message_queue.priority_lanes import MessageSerializer


@pytest.mark.unit
class TestBroadcastTask:
    def test_survives_lane_encoding(self, records):
        task = records.task(priority=Priority.HIGH, attempt=3, payload={"nested": {"ok": True}})

        fields = MessageSerializer.serialize(task.to_dict())
        rebuilt = BroadcastTask.from_dict(MessageSerializer.deserialize(fields))

        assert rebuilt == task

    def test_next_attempt_keeps_identity(self, records):
        task = records.task(task_id="t-1")

        retry = task.next_attempt()

        assert retry.attempt == 2
        assert retry.task_id == "t-1"
        assert task.attempt == 1

    def test_missing_fields_rejected(self):
        with pytest.raises(PayloadValidationError) as exc_info:
            BroadcastTask.from_dict({"task_id": "t-1", "channel": "sync_status"})

        assert exc_info.value.details["missing"] == ["target_type", "target_id", "payload"]
        assert exc_info.value.task_id == "t-1"

    @pytest.mark.parametrize("payload", ["{not json", "[1, 2]"])
    def test_payload_must_be_object(self, payload):
        with pytest.raises(PayloadValidationError):
            BroadcastTask.from_dict(
                {"channel": "c", "target_type": "user", "target_id": "7", "payload": payload}
            )

    def test_unknown_priority_falls_back_to_medium(self):
        task = BroadcastTask.from_dict(
            {"channel": "c", "target_type": "user", "target_id": 7, "payload": {}, "priority": "urgent"}
        )

        assert task.priority is Priority.MEDIUM
        assert task.target_id == "7"

    def test_malformed_attempt_rejected(self):
        with pytest.raises(PayloadValidationError):
            BroadcastTask.from_dict(
                {"channel": "c", "target_type": "user", "target_id": "7", "payload": {}, "attempt": "two"}
            )


@pytest.mark.unit
class TestFailedBroadcastRecord:
    def test_hash_round_trip(self, records, clock):
        record = records.record(failed_at=clock(), priority=Priority.CRITICAL, task_id="t-1")
        record.id = 12
        record.recovered_at = clock() + 5

        rebuilt = FailedBroadcastRecord.from_hash(record.to_hash())

        assert rebuilt == record

    def test_hash_omits_none(self, records, clock):
        fields = records.record(failed_at=clock()).to_hash()

        assert "id" not in fields
        assert "recovered_at" not in fields
        assert "task_id" not in fields

    def test_to_task_continues_attempt_count(self, records, clock):
        record = records.record(failed_at=clock(), retry_count=5, task_id="t-1")

        task = record.to_task()

        assert task.attempt == 6
        assert task.task_id == "t-1"
        assert task.payload == {"progress": 80}

    @pytest.mark.parametrize(
        "status, terminal",
        [
            (RecoveryStatus.PENDING, False),
            (RecoveryStatus.RECOVERED, True),
            (RecoveryStatus.PERMANENTLY_SKIPPED, True),
        ],
    )
    def test_is_terminal(self, records, clock, status, terminal):
        assert records.record(failed_at=clock(), status=status).is_terminal is terminal

    def test_to_dict_uses_enum_values(self, records, clock):
        data = records.record(failed_at=clock(), error_kind=ErrorKind.VALIDATION).to_dict()

        assert data["error_kind"] == "validation"
        assert data["status"] == "pending"
        assert data["priority"] == "medium"
