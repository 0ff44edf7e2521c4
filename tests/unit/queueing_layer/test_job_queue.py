"""
Unit Tests for JobQueue

These tests program the script replies on the in-memory broker and assert
on the keys/arguments the queue sends and on how it interprets the
replies; test_queue_scripts.py executes the scripts themselves. The
failed-enqueue ledger runs on SQLite.
"""

import orjson
import pytest

from engagement_backbone.config.constants import JobState
from engagement_backbone.config.settings import Settings
from engagement_backbone.core.exceptions import (
    BrokerScriptLimitError,
    BrokerUnavailableError,
    JobLockLostError,
    JobNotFoundError,
    QueueError,
)
from engagement_backbone.infrastructure.database.failed_enqueue import FailedEnqueueLedger, LedgerEntry
from engagement_backbone.queueing import scripts
from engagement_backbone.queueing.job import Job, JobOptions, JobSpec, QueueConfig, RetentionPolicy
from engagement_backbone.queueing.job_queue import JobQueue


class FakePipeline:
    """Records pipelined commands; execute() returns canned replies."""

    def __init__(self, replies):
        self._replies = replies
        self.commands = []

    def __getattr__(self, name):
        def _command(*args, **kwargs):
            self.commands.append((name, args))
            return self

        return _command

    async def execute(self):
        return self._replies


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the stats lambdas."""

    def __init__(self, pipeline_replies, types=None, sizes=None):
        self._pipeline_replies = pipeline_replies
        self._types = types or {}
        self._sizes = sizes or {}

    def pipeline(self, transaction=True):
        return FakePipeline(self._pipeline_replies)

    async def type(self, key):
        return self._types.get(key, "none")

    async def llen(self, key):
        return self._sizes.get(key, 0)

    async def zcard(self, key):
        return self._sizes.get(key, 0)


def _spec(user_id: int) -> JobSpec:
    return JobSpec(
        name="import-user",
        data={"user_id": user_id, "external_id": str(9000 + user_id), "email": f"u{user_id}@example.com"},
        options=JobOptions(job_id=f"import-user-{user_id}"),
    )


@pytest.fixture
def config():
    return QueueConfig(name="bulk-import", retention_completed=RetentionPolicy(3600, 100))


@pytest.fixture
def queue(config, broker, settings, metrics):
    return JobQueue(config, broker, settings=settings, metrics=metrics)


@pytest.fixture
def ledger(database):
    return FailedEnqueueLedger(database)


@pytest.fixture
def ledger_queue(config, broker, settings, metrics, ledger):
    return JobQueue(config, broker, ledger=ledger, settings=settings, metrics=metrics)


@pytest.mark.unit
class TestEnqueue:
    @pytest.mark.asyncio
    async def test_created(self, queue, broker, metrics):
        broker.commands.run_script.return_value = ["user-7", 1]

        result = await queue.enqueue("classify-user", {"user_id": 7}, JobOptions(job_id="user-7", priority=1))

        assert result.job_id == "user-7"
        assert result.created is True
        source, keys, args = broker.commands.run_script.await_args.args
        assert source == scripts.ADD_JOB
        assert keys[0] == "bull:bulk-import:wait"
        assert keys[3] == "bull:bulk-import:id"
        assert args[0] == "bull:bulk-import:"
        assert args[1] == "user-7"
        assert orjson.loads(args[3]) == {"user_id": 7}
        assert orjson.loads(args[4])["attempts"] == 3
        assert args[7] == 1
        metrics.record_enqueue.assert_called_with("bulk-import", "created")

    @pytest.mark.asyncio
    async def test_duplicate_is_not_an_error(self, queue, broker, metrics):
        broker.commands.run_script.return_value = ["user-7", 0]

        result = await queue.enqueue("classify-user", {"user_id": 7}, JobOptions(job_id="user-7"))

        assert result.created is False
        assert result.job_id == "user-7"
        metrics.record_enqueue.assert_called_with("bulk-import", "duplicate")

    @pytest.mark.asyncio
    async def test_broker_error_propagates(self, queue, broker, metrics):
        broker.commands.run_script.side_effect = BrokerUnavailableError("down")

        with pytest.raises(BrokerUnavailableError):
            await queue.enqueue("classify-user", {"user_id": 7})

        metrics.record_enqueue.assert_called_with("bulk-import", "failed")

    @pytest.mark.asyncio
    async def test_generated_id_and_clamped_options(self, queue, broker):
        broker.commands.run_script.return_value = ["17", 1]

        await queue.enqueue("x", {}, JobOptions(priority=-5, delay_ms=-1))

        args = broker.commands.run_script.await_args.args[2]
        assert args[1] == ""
        assert args[6] == 0
        assert args[7] == 0


@pytest.mark.unit
class TestBulkEnqueue:
    @pytest.mark.asyncio
    async def test_chunks_and_duplicates(self, queue, broker):
        broker.commands.run.side_effect = [
            [["import-user-1", 1], ["import-user-2", 0]],
            [["import-user-3", 1]],
        ]

        result = await queue.enqueue_bulk([_spec(1), _spec(2), _spec(3)], chunk_size=2)

        assert result.to_dict() == {
            "total": 3,
            "enqueued": 3,
            "duplicates": 1,
            "failed": 0,
            "chunks": 2,
            "fallback_chunks": 0,
            "ledger_rows": 0,
        }
        first = broker.commands.run.await_args_list[0]
        assert first.args[0] == "QUEUE.ENQUEUE_BULK"
        assert first.kwargs == {"queue": "bulk-import", "size": 2}
        broker.commands.script.assert_called_with(scripts.ADD_JOB)

    @pytest.mark.asyncio
    async def test_empty(self, queue, broker):
        result = await queue.enqueue_bulk([])
        assert result.total == 0
        broker.commands.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_chunk_falls_back_and_records_ledger(self, ledger_queue, broker, ledger):
        await ledger.record([LedgerEntry(user_id=1, external_id="9001", email=None, error_message="old")])
        broker.commands.run.side_effect = BrokerScriptLimitError("BUSY")
        broker.commands.run_script.side_effect = [
            ["import-user-1", 1],
            BrokerUnavailableError("down"),
            BrokerUnavailableError("still down"),
            ["import-user-3", 0],
        ]

        result = await ledger_queue.enqueue_bulk([_spec(1), _spec(2), _spec(3)], chunk_size=50)

        assert result.total == 3
        assert result.enqueued == 2
        assert result.duplicates == 1
        assert result.failed == 1
        assert result.ledger_rows == 1
        assert result.fallback_chunks == 1
        assert broker.commands.run_script.await_count == 4

        pending = await ledger.pending()
        assert [p.user_id for p in pending] == [2]
        assert pending[0].job_id == "import-user-2"
        assert pending[0].queue_name == "bulk-import"
        assert pending[0].payload["external_id"] == "9002"

    @pytest.mark.asyncio
    async def test_successful_chunk_resolves_ledger(self, ledger_queue, broker, ledger):
        await ledger.record([LedgerEntry(user_id=1, external_id="9001", email=None, error_message="old")])
        broker.commands.run.return_value = [["import-user-1", 1]]

        await ledger_queue.enqueue_bulk([_spec(1)])

        assert await ledger.count_unresolved() == 0

    @pytest.mark.asyncio
    async def test_failures_without_ledger_are_counted(self, queue, broker):
        broker.commands.run.side_effect = BrokerUnavailableError("down")
        broker.commands.run_script.side_effect = BrokerUnavailableError("down")

        result = await queue.enqueue_bulk([_spec(1)])

        assert result.failed == 1
        assert result.ledger_rows == 0

    @pytest.mark.asyncio
    async def test_progress_batches(self, queue, broker):
        broker.commands.run.side_effect = lambda stage, fn, **ctx: [["id", 1]] * ctx["size"]
        seen = []

        async def on_progress(enqueued, total):
            seen.append((enqueued, total))

        result = await queue.enqueue_bulk_with_progress([_spec(i) for i in range(5)], on_progress, batch_size=2)

        assert result.enqueued == 5
        assert seen == [(2, 5), (4, 5), (5, 5)]

    @pytest.mark.asyncio
    async def test_sync_progress_callback(self, queue, broker):
        broker.commands.run.side_effect = lambda stage, fn, **ctx: [["id", 1]] * ctx["size"]
        seen = []

        await queue.enqueue_bulk_with_progress([_spec(1)], lambda done, total: seen.append(done), batch_size=10)

        assert seen == [1]


@pytest.mark.unit
class TestLedgerDrain:
    @pytest.mark.asyncio
    async def test_requires_ledger(self, queue):
        with pytest.raises(QueueError):
            await queue.retry_failed_enqueues()

    @pytest.mark.asyncio
    async def test_drain(self, ledger_queue, broker, ledger):
        await ledger.record(
            [
                LedgerEntry(1, "9001", None, "down", "bulk-import", "import-user", "import-user-1", {"user_id": 1}),
                LedgerEntry(2, "9002", None, "down", "bulk-import", "import-user", "import-user-2", {"user_id": 2}),
                LedgerEntry(3, "9003", None, "down", "bulk-import", None, None, {}),
                LedgerEntry(4, "9004", None, "down", "engagement-backfill", "backfill-user", "b-4", {"user_id": 4}),
            ]
        )

        def _reply(source, keys, args, stage):
            if args[1] == "import-user-2":
                raise BrokerUnavailableError("still down")
            return [args[1], 1]

        broker.commands.run_script.side_effect = _reply

        summary = await ledger_queue.retry_failed_enqueues(limit=10)

        assert summary == {"processed": 3, "resolved": 1, "failed": 1, "skipped": 1}
        pending = {p.user_id: p for p in await ledger.pending(limit=10)}
        assert sorted(pending) == [2, 3, 4]
        assert pending[2].retry_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_resolves_row(self, ledger_queue, broker, ledger):
        await ledger.record(
            [LedgerEntry(1, "9001", None, "down", "bulk-import", "import-user", "import-user-1", {"user_id": 1})]
        )
        broker.commands.run_script.return_value = ["import-user-1", 0]

        summary = await ledger_queue.retry_failed_enqueues()

        assert summary["resolved"] == 1
        assert await ledger.count_unresolved() == 0


@pytest.mark.unit
class TestInspection:
    @pytest.mark.asyncio
    async def test_stats(self, queue, broker):
        broker.commands.data["bull:bulk-import:wait"] = "list"
        broker.commands.data["bull:bulk-import:failed"] = "zset"
        broker.commands.data["bull:bulk-import:import-user-1"] = "hash"
        client = FakeRedis(
            [2, 1, 1, 0, 5, 3],
            types={"bull:bulk-import:wait": "list", "bull:bulk-import:failed": "zset"},
            sizes={"bull:bulk-import:wait": 2, "bull:bulk-import:failed": 3},
        )

        async def _run(stage, fn, **ctx):
            return await fn(client)

        broker.commands.run.side_effect = _run

        stats = await queue.stats()

        assert stats["waiting"] == 3
        assert stats["active"] == 1
        assert stats["completed"] == 5
        assert stats["failed"] == 3
        assert stats["delayed"] == 0
        assert stats["direct"] == {"wait": 2, "failed": 3}

    @pytest.mark.asyncio
    async def test_stats_error(self, queue, broker):
        broker.commands.run.side_effect = BrokerUnavailableError("Broker not ready")
        assert await queue.stats() == {"error": "Broker not ready"}

    @pytest.mark.asyncio
    async def test_get_job(self, queue, broker):
        await broker.commands.hset(
            "bull:bulk-import:import-user-1",
            {"name": "import-user", "data": '{"user_id": 1}', "opts": '{"attempts": 3}', "state": "completed"},
        )

        job = await queue.get_job("import-user-1")

        assert job.data == {"user_id": 1}
        assert job.state == JobState.COMPLETED
        assert await queue.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_recent_jobs_interleaved(self, queue, broker):
        broker.commands.run.side_effect = [
            [[("a", 3.0)], [("b", 5.0)]],
            [{"name": "x", "state": "failed"}, {"name": "x", "state": "completed"}],
        ]

        jobs = await queue.recent_jobs(limit=10)

        assert [job.id for job in jobs] == ["b", "a"]
        assert jobs[0].state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_recent_jobs_empty(self, queue, broker):
        broker.commands.run.return_value = [[], []]
        assert await queue.recent_jobs() == []
        assert await queue.recent_jobs(limit=0) == []


@pytest.mark.unit
class TestMaintenance:
    @pytest.mark.asyncio
    async def test_clean(self, queue, broker):
        broker.commands.run_script.return_value = 4

        assert await queue.clean(60_000, 500, "completed") == 4

        source, keys, args = broker.commands.run_script.await_args.args
        assert source == scripts.CLEAN_JOBS
        assert keys == ["bull:bulk-import:completed"]
        assert args[2] == 500

    @pytest.mark.asyncio
    async def test_clean_rejects_live_states(self, queue):
        with pytest.raises(QueueError):
            await queue.clean(0, 10, JobState.WAITING)

    @pytest.mark.asyncio
    async def test_clear_failed(self, queue, broker):
        broker.commands.run_script.return_value = 2
        assert await queue.clear_failed() == 2
        assert broker.commands.run_script.await_args.args[1] == ["bull:bulk-import:failed"]

    @pytest.mark.asyncio
    async def test_apply_retention_uses_policy(self, queue, broker):
        broker.commands.run_script.return_value = 0
        await queue.apply_retention(JobState.COMPLETED)
        source, keys, args = broker.commands.run_script.await_args.args
        assert source == scripts.APPLY_RETENTION
        assert args[2] == 100

    @pytest.mark.asyncio
    async def test_obliterate_with_progress(self, queue, broker):
        broker.commands.data.update({"bull:bulk-import:wait": "1", "bull:bulk-import:1": "1", "bull:other:1": "1"})
        await broker.commands.hset("bull:bulk-import:2", {"name": "x"})
        broker.commands.run.side_effect = lambda stage, fn, **ctx: [1] * ctx["batch"]
        reports = []

        result = await queue.obliterate_with_progress(reports.append)

        assert result["success"] is True
        assert result["deleted"] == 3
        assert result["total"] == 3
        assert [r["phase"] for r in reports] == ["scanning", "deleting", "completed"]
        assert reports[-1]["percentage"] == 100

    @pytest.mark.asyncio
    async def test_obliterate_empty_queue(self, queue):
        result = await queue.obliterate()
        assert result["total"] == 0
        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_obliterate_timeout_reports_partial(self, config, broker, metrics):
        settings = Settings(QUEUE_OBLITERATE_TIMEOUT=-1)
        queue = JobQueue(config, broker, settings=settings, metrics=metrics)
        broker.commands.data["bull:bulk-import:wait"] = "1"
        reports = []

        result = await queue.obliterate_with_progress(reports.append)

        assert result["timed_out"] is True
        assert result["success"] is False
        assert result["deleted"] == 0
        assert reports[-1]["phase"] == "timeout"
        broker.commands.run.assert_not_called()


@pytest.mark.unit
class TestWorkerTransitions:
    @pytest.mark.asyncio
    async def test_claim(self, queue, broker):
        broker.commands.run_script.return_value = [
            "import-user-1",
            ["name", "import-user", "data", '{"user_id": 1}', "opts", '{"attempts": 3}', "state", "active"],
        ]

        job = await queue.claim("token-1", 30_000)

        assert job.id == "import-user-1"
        assert job.lock_token == "token-1"
        assert job.state == JobState.ACTIVE
        assert job.max_attempts == 3
        args = broker.commands.run_script.await_args.args[2]
        assert args[2] == "token-1"
        assert args[3] == 30_000

    @pytest.mark.asyncio
    async def test_claim_nothing(self, queue, broker):
        broker.commands.run_script.return_value = None
        assert await queue.claim("t", 1000) is None

    @pytest.mark.asyncio
    async def test_claim_without_data(self, queue, broker):
        broker.commands.run_script.return_value = ["orphan", []]
        assert await queue.claim("t", 1000) is None

    @pytest.mark.asyncio
    async def test_complete(self, queue, broker):
        job = Job(id="1", name="x", data={}, queue="bulk-import", lock_token="t")
        broker.commands.run_script.return_value = 0

        await queue.complete(job)

        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 1
        args = broker.commands.run_script.await_args.args[2]
        assert args[1] == "t"
        assert args[3] == "completed"

    @pytest.mark.asyncio
    async def test_fail_records_reason(self, queue, broker):
        job = Job(id="1", name="x", data={}, queue="bulk-import", lock_token="t")
        broker.commands.run_script.return_value = 0

        await queue.fail(job, "boom")

        assert job.state == JobState.FAILED
        assert job.failure_reason == "boom"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,error", [(-1, JobNotFoundError), (-2, JobLockLostError)])
    async def test_transition_codes(self, queue, broker, code, error):
        job = Job(id="1", name="x", data={}, queue="bulk-import", lock_token="t")
        broker.commands.run_script.return_value = code

        with pytest.raises(error):
            await queue.complete(job)

        assert job.attempts_made == 0

    @pytest.mark.asyncio
    async def test_retry_states(self, queue, broker):
        broker.commands.run_script.return_value = 0
        delayed = Job(id="1", name="x", data={}, queue="bulk-import")
        immediate = Job(id="2", name="x", data={}, queue="bulk-import")

        await queue.retry(delayed, 2000, "transient")
        await queue.retry(immediate, 0, "transient")

        assert delayed.state == JobState.DELAYED
        assert immediate.state == JobState.WAITING
        assert delayed.attempts_made == 1

    @pytest.mark.asyncio
    async def test_extend_lock(self, queue, broker):
        broker.commands.run_script.return_value = 1
        job = Job(id="1", name="x", data={}, queue="bulk-import", lock_token="t")
        assert await queue.extend_lock(job, 30_000) is True
        assert broker.commands.run_script.await_args.args[1] == ["bull:bulk-import:1:lock"]

    @pytest.mark.asyncio
    async def test_move_stalled(self, queue, broker):
        broker.commands.run_script.return_value = [["a", "b"], ["c"]]
        assert await queue.move_stalled(max_stalled=1) == (["a", "b"], ["c"])

    def test_with_broker_keeps_config_and_ledger(self, ledger_queue, offline_broker):
        bound = ledger_queue.with_broker(offline_broker)
        assert bound.name == "bulk-import"
        assert bound.broker is offline_broker
        assert bound.has_ledger is True
