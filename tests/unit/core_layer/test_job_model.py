"""
Unit Tests for Job Model and Queue Configuration
"""

import orjson
import pytest

from engagement_backbone.config.constants import JobState
from engagement_backbone.queueing.job import (
    BackoffPolicy,
    BulkEnqueueResult,
    Job,
    JobOptions,
    QueueConfig,
)


@pytest.mark.unit
class TestBackoffPolicy:
    def test_exponential(self):
        policy = BackoffPolicy(type="exponential", delay_ms=2000)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2000, 4000, 8000, 16000]

    def test_fixed(self):
        policy = BackoffPolicy(type="fixed", delay_ms=500)
        assert policy.delay_for(1) == policy.delay_for(5) == 500

    def test_zero_attempts_uses_base_delay(self):
        assert BackoffPolicy(delay_ms=1000).delay_for(0) == 1000


@pytest.mark.unit
class TestQueueConfig:
    def test_defaults(self):
        config = QueueConfig(name="bulk-import")
        assert config.default_attempts == 3
        assert config.concurrency == 1
        assert config.rate_limit is None
        assert config.retention_completed.max_count == 50_000
        assert config.retention_failed.age_seconds == 86_400


@pytest.mark.unit
class TestJobOptions:
    def test_attempts_default_from_queue(self):
        payload = orjson.loads(JobOptions(job_id="user-1", priority=10).to_json(default_attempts=3))
        assert payload == {"job_id": "user-1", "priority": 10, "delay_ms": 0, "attempts": 3}

    def test_explicit_attempts_win(self):
        payload = orjson.loads(JobOptions(attempts=5).to_json(default_attempts=3))
        assert payload["attempts"] == 5


@pytest.mark.unit
class TestJobFromHash:
    def test_full_hash(self):
        raw = {
            "name": "import-user",
            "data": orjson.dumps({"user_id": 42}).decode(),
            "opts": orjson.dumps({"attempts": 3}).decode(),
            "priority": "1",
            "attempts_made": "2",
            "state": "failed",
            "timestamp": "1700000000000",
            "delay": "0",
            "processed_on": "1700000000500",
            "finished_on": "1700000001000",
            "failed_reason": "catalog down",
            "stalled_counter": "1",
        }

        job = Job.from_hash("bulk-import", "import-user-42", raw)

        assert job.id == "import-user-42"
        assert job.data == {"user_id": 42}
        assert job.max_attempts == 3
        assert job.attempts_made == 2
        assert job.attempts_left == 1
        assert job.state == JobState.FAILED
        assert job.finished_at == 1700000001000
        assert job.failure_reason == "catalog down"
        assert job.stalled_count == 1

    def test_sparse_hash(self):
        job = Job.from_hash("q", "1", {"name": "x"})
        assert job.data == {}
        assert job.state == JobState.WAITING
        assert job.enqueued_at is None
        assert job.failure_reason is None

    def test_to_dict_serializes_state(self):
        job = Job(id="1", name="x", data={}, queue="q", state=JobState.ACTIVE)
        assert job.to_dict()["state"] == "active"


@pytest.mark.unit
class TestBulkEnqueueResult:
    def test_merge(self):
        total = BulkEnqueueResult(total=50, enqueued=50, chunks=1)
        total.merge(BulkEnqueueResult(total=10, enqueued=8, duplicates=2, failed=2, chunks=1, fallback_chunks=1, ledger_rows=2))

        assert total.to_dict() == {
            "total": 60,
            "enqueued": 58,
            "duplicates": 2,
            "failed": 2,
            "chunks": 2,
            "fallback_chunks": 1,
            "ledger_rows": 2,
        }
