#!/usr/bin/env python3
"""
Durable Job Queue on the Broker

This module implements one named job queue on broker lists, sorted sets and
hashes. Every state transition is one Lua script (see scripts.py), so the
dedupe check and the move between states are atomic.

Architectural Decision: chunked bulk admission with a durable fallback
- Bulk enqueue sends one transactional pipeline of ADD_JOB calls per chunk
  (default 50 jobs, one round-trip) to stay below script execution limits
- A rejected chunk falls back to per-job enqueue with exponential backoff
  (500ms * 2^n, capped at 8s, at most 5 attempts)
- Jobs the broker still refuses are written to the failed-enqueue ledger
  and replayed later by retry_failed_enqueues()

Author: Platform Engineering
Date: 2026-03-05
"""

import asyncio
import inspect
import time
from collections.abc import Callable
from typing import Any

import orjson
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from engagement_backbone.config.constants import JobState
from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.exceptions import (
    BrokerError,
    DatabaseError,
    DuplicateJobError,
    JobLockLostError,
    JobNotFoundError,
    QueueError,
)
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient
from engagement_backbone.infrastructure.database.failed_enqueue import (
    FailedEnqueueLedger,
    LedgerEntry,
    PendingEnqueue,
)
from engagement_backbone.infrastructure.monitoring.metrics import MetricsCollector, get_metrics_collector
from engagement_backbone.queueing import scripts
from engagement_backbone.queueing.job import (
    BulkEnqueueResult,
    EnqueueResult,
    Job,
    JobOptions,
    JobSpec,
    QueueConfig,
)

logger = get_logger(__name__)

ProgressCallback = Callable[..., Any]

OBLITERATE_BATCH_SIZE = 1000
PROGRESS_LOG_EVERY_CHUNKS = 10


def now_ms() -> int:
    return int(time.time() * 1000)


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


def _pairs_to_dict(flat: list[Any]) -> dict[str, str]:
    return {flat[i]: flat[i + 1] for i in range(0, len(flat) - 1, 2)}


class JobQueue:
    """
    One named queue: admission, inspection, maintenance and the
    claim/finish transitions used by Worker.

    STAGE-QUEUE: Queue operations

    Keys live under ``<QUEUE_PREFIX>:<name>:``. The queue shares the primary
    broker connection; workers use their own duplicated connection through
    the same JobQueue API (see Worker).
    """

    def __init__(
        self,
        config: QueueConfig,
        broker: BrokerClient,
        ledger: FailedEnqueueLedger | None = None,
        settings=None,
        metrics: MetricsCollector | None = None,
    ):
        self.config = config
        self.name = config.name
        self._broker = broker
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._queue_settings = self._settings.queue
        self._metrics = metrics or get_metrics_collector()
        self.prefix = self._queue_settings.QUEUE_PREFIX
        self.base = f"{self.prefix}:{self.name}:"
        self._closed = False

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def key(self, suffix: str) -> str:
        return f"{self.base}{suffix}"

    def job_key(self, job_id: str) -> str:
        return f"{self.base}{job_id}"

    def lock_key(self, job_id: str) -> str:
        return f"{self.base}{job_id}:lock"

    @property
    def broker(self) -> BrokerClient:
        return self._broker

    @property
    def has_ledger(self) -> bool:
        return self._ledger is not None

    def with_broker(self, broker: BrokerClient) -> "JobQueue":
        """Same queue bound to another connection (a worker's duplicate)."""
        return JobQueue(self.config, broker, ledger=self._ledger, settings=self._settings, metrics=self._metrics)

    def _add_job_call(self, spec: JobSpec, timestamp: int) -> tuple[list[str], list[Any]]:
        options = spec.options
        keys = [
            self.key("wait"),
            self.key("prioritized"),
            self.key("delayed"),
            self.key("id"),
            self.key("pc"),
            self.key("completed"),
            self.key("failed"),
        ]
        args = [
            self.base,
            options.job_id or "",
            spec.name,
            orjson.dumps(spec.data).decode("utf-8"),
            options.to_json(self.config.default_attempts),
            timestamp,
            max(0, options.delay_ms),
            max(0, options.priority),
        ]
        return keys, args

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    async def _add(self, spec: JobSpec) -> EnqueueResult:
        """
        Add one job.

        Raises:
            DuplicateJobError: A non-terminal job with this id already exists
            BrokerError: The broker refused or is unavailable
        """
        keys, args = self._add_job_call(spec, now_ms())
        job_id, created = await self._broker.commands.run_script(
            scripts.ADD_JOB, keys, args, stage="QUEUE.ENQUEUE"
        )
        if not int(created):
            raise DuplicateJobError(
                f"Job {job_id} already exists in {self.name}", job_id=str(job_id), details={"queue": self.name}
            )
        return EnqueueResult(job_id=str(job_id), created=True)

    async def enqueue(self, name: str, data: dict[str, Any], options: JobOptions | None = None) -> EnqueueResult:
        """
        Enqueue one job (at-least-once).

        STAGE-QUEUE.1: Enqueue

        A job id matching a waiting, delayed or active job creates nothing
        and returns created=False.

        Raises:
            BrokerError: The broker refused or is unavailable
        """
        spec = JobSpec(name=name, data=data, options=options or JobOptions())
        try:
            result = await self._add(spec)
        except DuplicateJobError as e:
            logger.debug("Duplicate job ignored", stage="QUEUE.1", queue=self.name, job_id=e.job_id)
            self._metrics.record_enqueue(self.name, "duplicate")
            return EnqueueResult(job_id=e.job_id or "", created=False)
        except BrokerError:
            self._metrics.record_enqueue(self.name, "failed")
            raise

        self._metrics.record_enqueue(self.name, "created")
        logger.debug("Job enqueued", stage="QUEUE.1", queue=self.name, job_id=result.job_id, job_name=name)
        return result

    async def _add_chunk(self, chunk: list[JobSpec]) -> list[Any]:
        """One transactional pipeline of ADD_JOB calls: a single round-trip."""
        script = self._broker.commands.script(scripts.ADD_JOB)
        timestamp = now_ms()

        async def _pipeline(client):
            async with client.pipeline(transaction=True) as pipe:
                for spec in chunk:
                    keys, args = self._add_job_call(spec, timestamp)
                    await script(keys=keys, args=args, client=pipe)
                return await pipe.execute()

        return await self._broker.commands.run(
            "QUEUE.ENQUEUE_BULK", _pipeline, queue=self.name, size=len(chunk)
        )

    async def _add_with_backoff(self, spec: JobSpec) -> EnqueueResult:
        """
        Per-job fallback: retry broker failures with exponential backoff.

        Duplicates are success and end the retry loop.
        """
        settings = self._queue_settings
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, settings.QUEUE_FALLBACK_MAX_ATTEMPTS)),
            wait=wait_exponential(
                multiplier=settings.QUEUE_FALLBACK_BASE_MS / 1000,
                max=settings.QUEUE_FALLBACK_MAX_MS / 1000,
            ),
            retry=retry_if_exception_type(BrokerError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._add(spec)
        except DuplicateJobError as e:
            return EnqueueResult(job_id=e.job_id or spec.options.job_id or "", created=False)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _fallback_chunk(self, chunk: list[JobSpec], chunk_error: BrokerError) -> BulkEnqueueResult:
        """
        Enqueue a rejected chunk job by job.

        STAGE-QUEUE.2b: Per-job fallback
        """
        logger.warning(
            "Bulk chunk rejected, falling back to per-job enqueue",
            stage="QUEUE.2b",
            queue=self.name,
            size=len(chunk),
            error_type=type(chunk_error).__name__,
            error=str(chunk_error),
        )
        result = BulkEnqueueResult(total=len(chunk), fallback_chunks=1)
        failures: list[tuple[JobSpec, BrokerError]] = []
        succeeded: list[JobSpec] = []
        for spec in chunk:
            try:
                outcome = await self._add_with_backoff(spec)
            except BrokerError as e:
                failures.append((spec, e))
                continue
            result.enqueued += 1
            if not outcome.created:
                result.duplicates += 1
            succeeded.append(spec)

        result.failed = len(failures)
        if failures:
            result.ledger_rows = await self._record_failures(failures)
        await self._resolve_ledger(succeeded)
        return result

    async def enqueue_bulk(
        self,
        jobs: list[JobSpec],
        chunk_size: int | None = None,
        delay_between_chunks_ms: int | None = None,
    ) -> BulkEnqueueResult:
        """
        Enqueue many jobs in chunks.

        STAGE-QUEUE.2: Bulk enqueue

        Each chunk is one broker round-trip. A chunk the broker rejects
        (script limit, outage) is retried job by job with backoff; jobs that
        still fail go to the failed-enqueue ledger. Duplicates count as
        enqueued.

        Args:
            jobs: Jobs to admit
            chunk_size: Jobs per round-trip (default QUEUE_BULK_CHUNK_SIZE)
            delay_between_chunks_ms: Pause between chunks (default QUEUE_BULK_CHUNK_DELAY_MS)

        Returns:
            BulkEnqueueResult with created/duplicate/failed counts
        """
        chunk_size = max(1, chunk_size or self._queue_settings.QUEUE_BULK_CHUNK_SIZE)
        if delay_between_chunks_ms is None:
            delay_between_chunks_ms = self._queue_settings.QUEUE_BULK_CHUNK_DELAY_MS

        result = BulkEnqueueResult()
        if not jobs:
            return result

        chunks = [jobs[i:i + chunk_size] for i in range(0, len(jobs), chunk_size)]
        started = time.monotonic()
        logger.info(
            "Bulk enqueue started",
            stage="QUEUE.2",
            queue=self.name,
            jobs=len(jobs),
            chunks=len(chunks),
            chunk_size=chunk_size,
        )

        for index, chunk in enumerate(chunks, start=1):
            try:
                replies = await self._add_chunk(chunk)
            except BrokerError as e:
                chunk_result = await self._fallback_chunk(chunk, e)
            else:
                chunk_result = BulkEnqueueResult(total=len(chunk), enqueued=len(chunk))
                chunk_result.duplicates = sum(1 for reply in replies if not int(reply[1]))
                await self._resolve_ledger(chunk)
            chunk_result.chunks = 1
            result.merge(chunk_result)

            if index % PROGRESS_LOG_EVERY_CHUNKS == 0:
                logger.info(
                    "Bulk enqueue progress",
                    stage="QUEUE.2",
                    queue=self.name,
                    chunk=index,
                    chunks=len(chunks),
                    enqueued=result.enqueued,
                    failed=result.failed,
                )
            if index < len(chunks) and delay_between_chunks_ms > 0:
                await asyncio.sleep(delay_between_chunks_ms / 1000)

        created = result.enqueued - result.duplicates
        self._metrics.record_enqueue(self.name, "created", created)
        self._metrics.record_enqueue(self.name, "duplicate", result.duplicates)
        self._metrics.record_enqueue(self.name, "failed", result.failed)
        logger.info(
            "Bulk enqueue finished",
            stage="QUEUE.2",
            queue=self.name,
            duration_ms=round((time.monotonic() - started) * 1000),
            **result.to_dict(),
        )
        return result

    async def enqueue_bulk_with_progress(
        self,
        jobs: list[JobSpec],
        on_progress: ProgressCallback | None = None,
        batch_size: int | None = None,
    ) -> BulkEnqueueResult:
        """
        enqueue_bulk in outer batches, reporting (enqueued, total) between them.

        STAGE-QUEUE.3: Bulk enqueue with progress
        """
        batch_size = max(1, batch_size or self._queue_settings.QUEUE_PROGRESS_BATCH_SIZE)
        total = len(jobs)
        result = BulkEnqueueResult()
        for start in range(0, total, batch_size):
            result.merge(await self.enqueue_bulk(jobs[start:start + batch_size]))
            if on_progress is not None:
                await _maybe_await(on_progress(result.enqueued, total))
        return result

    # -------------------------------------------------------------------------
    # Failed-enqueue ledger
    # -------------------------------------------------------------------------

    async def _record_failures(self, failures: list[tuple[JobSpec, BrokerError]]) -> int:
        if self._ledger is None:
            logger.error(
                "Jobs could not be enqueued and no ledger is configured",
                stage="QUEUE.LEDGER",
                queue=self.name,
                count=len(failures),
                error=str(failures[0][1]),
            )
            return 0

        entries = []
        for spec, error in failures:
            user_id = spec.data.get("user_id")
            if user_id is None:
                logger.error(
                    "Job without user_id cannot be recorded in ledger",
                    stage="QUEUE.LEDGER",
                    queue=self.name,
                    job_id=spec.options.job_id,
                )
                continue
            entries.append(
                LedgerEntry(
                    user_id=int(user_id),
                    external_id=spec.data.get("external_id"),
                    email=spec.data.get("email"),
                    error_message=str(error),
                    queue_name=self.name,
                    job_name=spec.name,
                    job_id=spec.options.job_id,
                    payload=spec.data,
                )
            )
        try:
            recorded = await self._ledger.record(entries)
        except DatabaseError as e:
            logger.error(
                "Failed to record jobs in failed-enqueue ledger",
                stage="QUEUE.LEDGER",
                queue=self.name,
                count=len(entries),
                error=str(e),
            )
            return 0
        self._metrics.record_enqueue(self.name, "ledger", recorded)
        return recorded

    async def _resolve_ledger(self, specs: list[JobSpec]) -> None:
        if self._ledger is None:
            return
        user_ids = [int(spec.data["user_id"]) for spec in specs if spec.data.get("user_id") is not None]
        if not user_ids:
            return
        try:
            await self._ledger.resolve(user_ids)
        except DatabaseError as e:
            logger.warning("Failed to resolve ledger rows", stage="QUEUE.LEDGER", queue=self.name, error=str(e))

    def _spec_from_ledger(self, row: PendingEnqueue) -> JobSpec | None:
        if not row.job_name:
            return None
        data = row.payload or {"user_id": row.user_id, "external_id": row.external_id, "email": row.email}
        return JobSpec(name=row.job_name, data=data, options=JobOptions(job_id=row.job_id))

    async def retry_failed_enqueues(
        self,
        limit: int = 100,
        rebuild: Callable[[PendingEnqueue], JobSpec | None] | None = None,
    ) -> dict[str, int]:
        """
        Drain the failed-enqueue ledger for this queue.

        STAGE-QUEUE.4: Ledger drain

        Each row is enqueued again; success or an existing live job marks it
        resolved, a broker failure bumps its retry_count.

        Raises:
            QueueError: The queue has no ledger
        """
        if self._ledger is None:
            raise QueueError(f"Queue {self.name} has no failed-enqueue ledger", details={"queue": self.name})

        rebuild = rebuild or self._spec_from_ledger
        rows = await self._ledger.pending(limit=limit, queue_name=self.name)
        resolved: list[int] = []
        failed = 0
        skipped = 0
        for row in rows:
            spec = rebuild(row)
            if spec is None:
                skipped += 1
                continue
            try:
                await self._add(spec)
            except DuplicateJobError:
                pass
            except BrokerError as e:
                failed += 1
                await self._ledger.bump_retry(row.user_id, str(e))
                continue
            resolved.append(row.user_id)

        if resolved:
            await self._ledger.resolve(resolved)
        self._metrics.set_ledger_size(await self._ledger.count_unresolved())

        summary = {"processed": len(rows), "resolved": len(resolved), "failed": failed, "skipped": skipped}
        logger.info("Failed-enqueue ledger drained", stage="QUEUE.4", queue=self.name, **summary)
        return summary

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def _counts(self) -> dict[str, int]:
        async def _pipeline(client):
            pipe = client.pipeline(transaction=False)
            pipe.llen(self.key("wait"))
            pipe.zcard(self.key("prioritized"))
            pipe.llen(self.key("active"))
            pipe.zcard(self.key("delayed"))
            pipe.zcard(self.key("completed"))
            pipe.zcard(self.key("failed"))
            return await pipe.execute()

        wait, prioritized, active, delayed, completed, failed = await self._broker.commands.run(
            "QUEUE.STATS", _pipeline, queue=self.name
        )
        return {
            "waiting": int(wait) + int(prioritized),
            "active": int(active),
            "completed": int(completed),
            "failed": int(failed),
            "delayed": int(delayed),
        }

    async def _direct_counts(self) -> dict[str, int]:
        """Sizes of the state structures found by scanning the queue keys."""
        direct: dict[str, int] = {}
        async for keys in self._broker.commands.scan_iter(f"{self.base}*", count=1000):
            for key in keys:
                suffix = key[len(self.base):]
                if suffix not in scripts.STATE_KEYS:
                    continue
                key_type = await self._broker.commands.run("QUEUE.STATS", lambda c, k=key: c.type(k))
                if key_type == "list":
                    size = await self._broker.commands.run("QUEUE.STATS", lambda c, k=key: c.llen(k))
                elif key_type == "zset":
                    size = await self._broker.commands.run("QUEUE.STATS", lambda c, k=key: c.zcard(k))
                else:
                    continue
                direct[suffix] = int(size)
        return direct

    async def stats(self) -> dict[str, Any]:
        """
        Job counts by state plus scanned structure sizes.

        STAGE-QUEUE.5: Stats

        Returns {"error": ...} instead of raising when the broker does not
        answer within QUEUE_STATS_TIMEOUT.
        """
        try:
            counts: dict[str, Any] = await asyncio.wait_for(
                self._counts(), timeout=self._queue_settings.QUEUE_STATS_TIMEOUT
            )
        except (asyncio.TimeoutError, BrokerError) as e:
            error = str(e) or "stats query timed out"
            logger.error("Queue stats unavailable", stage="QUEUE.5", queue=self.name, error=error)
            return {"error": error}

        self._metrics.record_queue_depth(self.name, counts)
        try:
            counts["direct"] = await asyncio.wait_for(
                self._direct_counts(), timeout=self._queue_settings.QUEUE_AGGREGATE_STATS_TIMEOUT
            )
        except (asyncio.TimeoutError, BrokerError) as e:
            logger.warning("Direct queue counts unavailable", stage="QUEUE.5", queue=self.name, error=str(e))
            counts["direct"] = None
        return counts

    async def get_job(self, job_id: str) -> Job | None:
        raw = await self._broker.commands.hgetall(self.job_key(job_id))
        if not raw:
            return None
        return Job.from_hash(self.name, job_id, raw)

    async def recent_jobs(self, limit: int = 10) -> list[Job]:
        """
        Most recently finished jobs, completed and failed interleaved.

        STAGE-QUEUE.6: Recent jobs
        """
        if limit <= 0:
            return []

        async def _finished(client):
            pipe = client.pipeline(transaction=False)
            pipe.zrevrange(self.key("completed"), 0, limit - 1, withscores=True)
            pipe.zrevrange(self.key("failed"), 0, limit - 1, withscores=True)
            return await pipe.execute()

        completed, failed = await self._broker.commands.run("QUEUE.RECENT", _finished, queue=self.name)
        merged = sorted([*completed, *failed], key=lambda pair: float(pair[1]), reverse=True)[:limit]
        if not merged:
            return []

        async def _hashes(client):
            pipe = client.pipeline(transaction=False)
            for job_id, _score in merged:
                pipe.hgetall(self.job_key(job_id))
            return await pipe.execute()

        hashes = await self._broker.commands.run("QUEUE.RECENT", _hashes, queue=self.name)
        return [
            Job.from_hash(self.name, job_id, raw)
            for (job_id, _score), raw in zip(merged, hashes)
            if raw
        ]

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def _finished_key(self, state: JobState | str) -> str:
        state = JobState(state)
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise QueueError(f"Cannot clean jobs in state {state.value}", details={"queue": self.name})
        return self.key(state.value)

    async def clean(self, max_age_ms: int, limit: int, state: JobState | str) -> int:
        """
        Delete up to `limit` completed or failed jobs older than max_age_ms.

        STAGE-QUEUE.7: Clean
        """
        removed = await self._broker.commands.run_script(
            scripts.CLEAN_JOBS,
            [self._finished_key(state)],
            [self.base, now_ms() - max(0, max_age_ms), limit],
            stage="QUEUE.7",
        )
        logger.info("Queue cleaned", stage="QUEUE.7", queue=self.name, state=str(state), removed=removed)
        return int(removed)

    async def clear_completed(self) -> int:
        return await self.clean(0, 1000, JobState.COMPLETED)

    async def clear_failed(self) -> int:
        return await self.clean(0, 1000, JobState.FAILED)

    async def apply_retention(self, state: JobState | str) -> int:
        """Trim finished jobs to the queue's age and count bounds."""
        state = JobState(state)
        policy = self.config.retention_completed if state == JobState.COMPLETED else self.config.retention_failed
        return int(
            await self._broker.commands.run_script(
                scripts.APPLY_RETENTION,
                [self._finished_key(state)],
                [self.base, now_ms() - policy.age_seconds * 1000, policy.max_count],
                stage="QUEUE.RETENTION",
            )
        )

    async def obliterate(self) -> dict[str, Any]:
        return await self.obliterate_with_progress(None)

    async def obliterate_with_progress(self, on_progress: ProgressCallback | None = None) -> dict[str, Any]:
        """
        Delete every key of this queue without one long server-side script.

        STAGE-QUEUE.8: Obliterate

        SCANs the queue prefix 1,000 keys at a time, then pipelines DELs in
        batches of 1,000, reporting {phase, deleted, total, percentage}
        after each batch. Stops at QUEUE_OBLITERATE_TIMEOUT and reports a
        partial result.
        """
        started = time.monotonic()
        deadline = started + self._queue_settings.QUEUE_OBLITERATE_TIMEOUT

        async def _report(phase: str, deleted: int, total: int) -> None:
            if on_progress is None:
                return
            percentage = round(deleted / total * 100) if total else 100
            await _maybe_await(
                on_progress({"phase": phase, "deleted": deleted, "total": total, "percentage": percentage})
            )

        keys: list[str] = []
        timed_out = False
        async for page in self._broker.commands.scan_iter(f"{self.base}*", count=OBLITERATE_BATCH_SIZE):
            keys.extend(page)
            if time.monotonic() > deadline:
                timed_out = True
                break
        keys = list(dict.fromkeys(keys))
        total = len(keys)
        await _report("scanning", 0, total)

        deleted = 0
        for start in range(0, total, OBLITERATE_BATCH_SIZE):
            if time.monotonic() > deadline:
                timed_out = True
                break
            batch = keys[start:start + OBLITERATE_BATCH_SIZE]

            async def _delete(client, batch=batch):
                pipe = client.pipeline(transaction=False)
                for key in batch:
                    pipe.delete(key)
                return await pipe.execute()

            replies = await self._broker.commands.run("QUEUE.8", _delete, queue=self.name, batch=len(batch))
            deleted += sum(int(reply) for reply in replies)
            await _report("deleting", deleted, total)

        result = {
            "success": not timed_out,
            "deleted": deleted,
            "total": total,
            "timed_out": timed_out,
            "duration_ms": round((time.monotonic() - started) * 1000),
        }
        await _report("timeout" if timed_out else "completed", deleted, total)
        if timed_out:
            logger.warning("Queue obliterate timed out, partial delete", stage="QUEUE.8", queue=self.name, **result)
        else:
            logger.info("Queue obliterated", stage="QUEUE.8", queue=self.name, **result)
        return result

    async def close(self) -> None:
        """Release the queue; the shared broker connection stays open."""
        if not self._closed:
            self._closed = True
            logger.info("Queue closed", stage="QUEUE.9", queue=self.name)

    # -------------------------------------------------------------------------
    # Worker transitions
    # -------------------------------------------------------------------------

    async def claim(self, token: str, lock_duration_ms: int) -> Job | None:
        """
        Move the next due job to active under a lock.

        Delayed jobs whose time has come are promoted first; plain waiting
        jobs are claimed before prioritized ones, lower priority first.
        """
        reply = await self._broker.commands.run_script(
            scripts.CLAIM_JOB,
            [self.key("wait"), self.key("prioritized"), self.key("active"), self.key("delayed"), self.key("pc")],
            [self.base, now_ms(), token, lock_duration_ms],
            stage="WORKER.CLAIM",
        )
        if not reply:
            return None
        job_id, flat = reply
        if not flat:
            logger.warning("Claimed job has no data, dropped", stage="WORKER.CLAIM", queue=self.name, job_id=job_id)
            return None
        job = Job.from_hash(self.name, str(job_id), _pairs_to_dict(flat))
        job.lock_token = token
        return job

    async def extend_lock(self, job: Job, lock_duration_ms: int) -> bool:
        extended = await self._broker.commands.run_script(
            scripts.EXTEND_LOCK,
            [self.lock_key(job.id)],
            [job.lock_token or "", lock_duration_ms],
            stage="WORKER.LOCK",
        )
        return bool(int(extended))

    def _check_transition(self, code: Any, job: Job) -> None:
        code = int(code)
        if code == -1:
            raise JobNotFoundError(f"Job {job.id} no longer exists", details={"queue": self.name, "job_id": job.id})
        if code == -2:
            raise JobLockLostError(
                f"Lock of job {job.id} is held by another worker", details={"queue": self.name, "job_id": job.id}
            )

    async def _move_to_finished(self, job: Job, state: JobState, reason: str = "") -> None:
        code = await self._broker.commands.run_script(
            scripts.MOVE_TO_FINISHED,
            [self.key("active"), self.key(state.value), self.job_key(job.id), self.lock_key(job.id)],
            [job.id, job.lock_token or "", now_ms(), state.value, reason],
            stage="WORKER.FINISH",
        )
        self._check_transition(code, job)
        job.attempts_made += 1
        job.state = state
        job.failure_reason = reason or None

    async def complete(self, job: Job) -> None:
        """
        Raises:
            JobLockLostError: The job was reclaimed by another worker
        """
        await self._move_to_finished(job, JobState.COMPLETED)

    async def fail(self, job: Job, reason: str) -> None:
        await self._move_to_finished(job, JobState.FAILED, reason)

    async def retry(self, job: Job, delay_ms: int, reason: str) -> None:
        """Return the job to delayed (or waiting) for another attempt."""
        code = await self._broker.commands.run_script(
            scripts.RETRY_JOB,
            [
                self.key("active"),
                self.key("wait"),
                self.key("delayed"),
                self.job_key(job.id),
                self.lock_key(job.id),
                self.key("prioritized"),
                self.key("pc"),
            ],
            [job.id, job.lock_token or "", now_ms(), max(0, delay_ms), reason],
            stage="WORKER.RETRY",
        )
        self._check_transition(code, job)
        job.attempts_made += 1
        job.state = JobState.DELAYED if delay_ms > 0 else JobState.WAITING

    async def move_stalled(self, max_stalled: int = 1) -> tuple[list[str], list[str]]:
        """
        Recover active jobs whose lock expired.

        Returns:
            (requeued job ids, failed job ids)
        """
        requeued, failed = await self._broker.commands.run_script(
            scripts.MOVE_STALLED,
            [self.key("active"), self.key("wait"), self.key("failed")],
            [self.base, now_ms(), max_stalled],
            stage="WORKER.STALLED",
        )
        return [str(job_id) for job_id in requeued], [str(job_id) for job_id in failed]
