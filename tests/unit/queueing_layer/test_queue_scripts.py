"""
Unit Tests for the Queue Lua Scripts

Every test here executes the real scripts from queueing/scripts.py through
BrokerClient, against fakeredis with Lua enabled (or a live broker with
USE_REAL_BROKER=1). Covers dedupe, bulk admission, claim order, the
retry/fail bound, stalled recovery, cleaning, retention and obliterate.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from engagement_backbone.config.constants import JobState
from engagement_backbone.core.exceptions import JobLockLostError, JobNotFoundError
from engagement_backbone.queueing.job import BackoffPolicy, JobOptions, JobSpec, QueueConfig, RetentionPolicy
from engagement_backbone.queueing.job_queue import JobQueue
from engagement_backbone.queueing.worker import Worker, WorkerOptions

LOCK_MS = 30_000


def _spec(user_id: int, **options) -> JobSpec:
    return JobSpec(
        name="import-user",
        data={"user_id": user_id},
        options=JobOptions(job_id=f"import-user-{user_id}", **options),
    )


@pytest.fixture
def config():
    return QueueConfig(
        name="bulk-import",
        default_attempts=2,
        backoff=BackoffPolicy("fixed", 0),
        retention_completed=RetentionPolicy(age_seconds=3600, max_count=2),
        retention_failed=RetentionPolicy(age_seconds=0, max_count=100),
    )


@pytest.fixture
def queue(config, script_broker, settings, metrics):
    return JobQueue(config, script_broker, settings=settings, metrics=metrics)


async def _claim(queue: JobQueue, token: str = "token", lock_ms: int = LOCK_MS):
    job = await queue.claim(token, lock_ms)
    assert job is not None
    return job


@pytest.mark.unit
class TestAdmission:
    @pytest.mark.asyncio
    async def test_same_job_id_is_admitted_once(self, queue):
        options = JobOptions(job_id="user-42")

        first = await queue.enqueue("classify-user", {"user_id": 42}, options)
        second = await queue.enqueue("classify-user", {"user_id": 42}, options)

        assert (first.job_id, first.created) == ("user-42", True)
        assert (second.job_id, second.created) == ("user-42", False)
        stats = await queue.stats()
        assert stats["waiting"] == 1
        assert stats["direct"] == {"wait": 1}

    @pytest.mark.asyncio
    async def test_generated_ids_are_unique(self, queue):
        first = await queue.enqueue("classify-user", {"user_id": 1})
        second = await queue.enqueue("classify-user", {"user_id": 1})

        assert first.created and second.created
        assert first.job_id != second.job_id

    @pytest.mark.asyncio
    async def test_duplicate_while_active_then_new_job_after_completion(self, queue):
        await queue.enqueue("classify-user", {"user_id": 42}, JobOptions(job_id="user-42"))
        job = await _claim(queue)

        assert (await queue.enqueue("classify-user", {"user_id": 42}, JobOptions(job_id="user-42"))).created is False

        await queue.complete(job)
        again = await queue.enqueue("classify-user", {"user_id": 42}, JobOptions(job_id="user-42"))

        assert again.created is True
        stored = await queue.get_job("user-42")
        assert stored.state == JobState.WAITING
        assert stored.attempts_made == 0
        assert (await queue.stats())["completed"] == 0

    @pytest.mark.asyncio
    async def test_bulk_enqueue_across_chunk_boundary(self, queue):
        jobs = [_spec(i) for i in range(51)]

        result = await queue.enqueue_bulk(jobs, chunk_size=50)

        assert result.chunks == 2
        assert result.enqueued == 51
        assert result.duplicates == 0
        assert result.fallback_chunks == 0
        assert (await queue.stats())["waiting"] == 51

        again = await queue.enqueue_bulk(jobs, chunk_size=50)
        assert again.duplicates == 51
        assert (await queue.stats())["waiting"] == 51

    @pytest.mark.asyncio
    async def test_delayed_job_is_not_waiting(self, queue):
        await queue.enqueue("import-user", {"user_id": 1}, JobOptions(job_id="later", delay_ms=60_000))

        stats = await queue.stats()
        assert stats["delayed"] == 1
        assert stats["waiting"] == 0
        assert await queue.claim("token", LOCK_MS) is None


@pytest.mark.unit
class TestClaim:
    @pytest.mark.asyncio
    async def test_fifo_and_lock(self, queue, script_broker):
        await queue.enqueue_bulk([_spec(1), _spec(2)])

        job = await _claim(queue, token="t1")

        assert job.id == "import-user-1"
        assert job.data == {"user_id": 1}
        assert job.state == JobState.ACTIVE
        assert job.max_attempts == 2
        assert await script_broker.commands.get(queue.lock_key(job.id)) == "t1"
        assert (await queue.stats())["active"] == 1

    @pytest.mark.asyncio
    async def test_plain_jobs_before_prioritized(self, queue):
        await queue.enqueue("import-user", {"user_id": 1}, JobOptions(job_id="low", priority=5))
        await queue.enqueue("import-user", {"user_id": 2}, JobOptions(job_id="high", priority=1))
        await queue.enqueue("import-user", {"user_id": 3}, JobOptions(job_id="plain"))

        assert [(await _claim(queue)).id for _ in range(3)] == ["plain", "high", "low"]
        assert await queue.claim("token", LOCK_MS) is None

    @pytest.mark.asyncio
    async def test_due_delayed_job_is_promoted(self, queue):
        await queue.enqueue("import-user", {"user_id": 1}, JobOptions(job_id="soon", delay_ms=5))
        await asyncio.sleep(0.02)

        assert (await _claim(queue)).id == "soon"

    @pytest.mark.asyncio
    async def test_extend_lock_requires_token(self, queue):
        await queue.enqueue_bulk([_spec(1)])
        job = await _claim(queue, token="t1")

        assert await queue.extend_lock(job, LOCK_MS) is True
        job.lock_token = "someone-else"
        assert await queue.extend_lock(job, LOCK_MS) is False


@pytest.mark.unit
class TestFinishAndRetry:
    @pytest.mark.asyncio
    async def test_complete(self, queue):
        await queue.enqueue_bulk([_spec(1)])
        job = await _claim(queue)

        await queue.complete(job)

        stored = await queue.get_job(job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.attempts_made == 1
        assert stored.finished_at is not None
        stats = await queue.stats()
        assert (stats["active"], stats["completed"]) == (0, 1)

    @pytest.mark.asyncio
    async def test_retry_until_attempts_are_used(self, queue, settings):
        await queue.enqueue_bulk([_spec(1)])
        processor = AsyncMock(side_effect=RuntimeError("catalog timeout"))
        worker = Worker(queue, processor, WorkerOptions.from_config(queue.config), settings)

        await worker._run_job(await _claim(queue))

        stored = await queue.get_job("import-user-1")
        assert stored.state == JobState.WAITING
        assert stored.attempts_made == 1
        assert stored.failure_reason == "catalog timeout"

        job = await _claim(queue)
        assert job.attempts_made == 1
        await worker._run_job(job)

        stored = await queue.get_job("import-user-1")
        assert stored.state == JobState.FAILED
        assert stored.attempts_made == 2
        stats = await queue.stats()
        assert (stats["waiting"], stats["active"], stats["failed"]) == (0, 0, 1)

    @pytest.mark.asyncio
    async def test_retry_with_delay_goes_to_delayed(self, queue):
        await queue.enqueue_bulk([_spec(1)])
        job = await _claim(queue)

        await queue.retry(job, 60_000, "later")

        assert (await queue.get_job(job.id)).state == JobState.DELAYED
        assert (await queue.stats())["delayed"] == 1

    @pytest.mark.asyncio
    async def test_transitions_check_the_lock(self, queue):
        await queue.enqueue_bulk([_spec(1)])
        job = await _claim(queue, token="t1")
        job.lock_token = "t2"

        with pytest.raises(JobLockLostError):
            await queue.retry(job, 0, "boom")
        with pytest.raises(JobLockLostError):
            await queue.complete(job)

    @pytest.mark.asyncio
    async def test_missing_job(self, queue):
        await queue.enqueue_bulk([_spec(1)])
        job = await _claim(queue)
        await queue.broker.commands.delete(queue.job_key(job.id))

        with pytest.raises(JobNotFoundError):
            await queue.fail(job, "boom")


@pytest.mark.unit
class TestStalledJobs:
    @pytest.mark.asyncio
    async def test_requeued_then_failed(self, queue):
        await queue.enqueue_bulk([_spec(1)])
        await _claim(queue, lock_ms=1)
        await asyncio.sleep(0.02)

        assert await queue.move_stalled(max_stalled=1) == (["import-user-1"], [])
        assert (await queue.get_job("import-user-1")).state == JobState.WAITING

        await _claim(queue, lock_ms=1)
        await asyncio.sleep(0.02)

        assert await queue.move_stalled(max_stalled=1) == ([], ["import-user-1"])
        stored = await queue.get_job("import-user-1")
        assert stored.state == JobState.FAILED
        assert stored.stalled_count == 2
        assert stored.failure_reason == "job stalled more than allowable limit"

    @pytest.mark.asyncio
    async def test_locked_job_is_left_alone(self, queue):
        await queue.enqueue_bulk([_spec(1)])
        await _claim(queue)

        assert await queue.move_stalled() == ([], [])
        assert (await queue.stats())["active"] == 1


@pytest.mark.unit
class TestMaintenance:
    async def _finish(self, queue: JobQueue, count: int, state: JobState) -> None:
        await queue.enqueue_bulk([_spec(i) for i in range(count)])
        for _ in range(count):
            job = await _claim(queue)
            if state == JobState.COMPLETED:
                await queue.complete(job)
            else:
                await queue.fail(job, "boom")

    @pytest.mark.asyncio
    async def test_clean_removes_finished_jobs(self, queue):
        await self._finish(queue, 2, JobState.COMPLETED)

        assert await queue.clean(0, 1000, JobState.COMPLETED) == 2

        assert await queue.get_job("import-user-0") is None
        assert (await queue.stats())["completed"] == 0

    @pytest.mark.asyncio
    async def test_clean_respects_limit(self, queue):
        await self._finish(queue, 3, JobState.FAILED)

        assert await queue.clean(0, 2, JobState.FAILED) == 2
        assert (await queue.stats())["failed"] == 1

    @pytest.mark.asyncio
    async def test_retention_trims_oldest_beyond_max_count(self, queue):
        await self._finish(queue, 3, JobState.COMPLETED)

        assert await queue.apply_retention(JobState.COMPLETED) == 1

        assert await queue.get_job("import-user-0") is None
        assert (await queue.get_job("import-user-2")).state == JobState.COMPLETED
        assert (await queue.stats())["completed"] == 2

    @pytest.mark.asyncio
    async def test_retention_drops_jobs_older_than_age(self, queue):
        await self._finish(queue, 2, JobState.FAILED)
        await asyncio.sleep(0.02)

        assert await queue.apply_retention(JobState.FAILED) == 2
        assert (await queue.stats())["failed"] == 0

    @pytest.mark.asyncio
    async def test_recent_jobs_interleaves_states(self, queue):
        await self._finish(queue, 1, JobState.COMPLETED)
        await queue.enqueue_bulk([_spec(5)])
        await queue.fail(await _claim(queue), "boom")

        recent = await queue.recent_jobs(5)

        assert {job.id for job in recent} == {"import-user-0", "import-user-5"}
        assert {job.state for job in recent} == {JobState.COMPLETED, JobState.FAILED}

    @pytest.mark.asyncio
    async def test_obliterate_deletes_every_queue_key(self, queue):
        await queue.enqueue_bulk([_spec(i) for i in range(3)])
        await _claim(queue)
        progress = []

        result = await queue.obliterate_with_progress(progress.append)

        assert result["success"] is True
        assert result["deleted"] == result["total"] > 0
        assert progress[-1]["phase"] == "completed"
        assert progress[-1]["percentage"] == 100
        _, remaining = await queue.broker.commands.scan(f"{queue.base}*")
        assert remaining == []
        stats = await queue.stats()
        assert (stats["waiting"], stats["active"]) == (0, 0)
