#!/usr/bin/env python3
"""
Worker Runtime

Architecture:
    Worker (Public API: initialize / start / pause / resume / close)
        ├── Claim loop (bounded concurrency, optional rate limit)
        ├── Job runner (lock extension, retry/fail decision, events)
        ├── Stalled checker (recovers jobs whose lock expired)
        └── WorkerEventBus (metrics, broadcasts, retention)

Each worker owns a duplicated broker connection so that its claim traffic
never queues behind the primary connection. The worker pauses when that
connection reports error/closing/reconnecting and resumes on ready; jobs
already in flight keep running.

Author: Platform Engineering
Date: 2026-03-05
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.exceptions import (
    BrokerError,
    JobLockLostError,
    JobNotFoundError,
    WorkerInitializationError,
)
from engagement_backbone.core.logging.logger import (
    clear_correlation_id,
    get_logger,
    set_correlation_id,
)
from engagement_backbone.core.resilience.retry import is_retryable
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient, BrokerState
from engagement_backbone.infrastructure.monitoring.metrics import MetricsSink
from engagement_backbone.queueing.events import RetentionHook, WorkerEvent, WorkerEventBus
from engagement_backbone.queueing.job import Job, QueueConfig, RateLimit
from engagement_backbone.queueing.job_queue import JobQueue
from engagement_backbone.rate_limiting.rate_limiter import SlidingWindowRateLimiter

logger = get_logger(__name__)

Processor = Callable[[Job], Awaitable[Any]]

PAUSE_STATES = (BrokerState.ERROR, BrokerState.CLOSING, BrokerState.RECONNECTING, BrokerState.DISCONNECTED)


@dataclass
class WorkerOptions:
    """
    Consumer settings.

    lock_duration_ms is renewed every lock_duration_ms / 3 while a job runs.
    """

    concurrency: int = 1
    rate_limit: RateLimit | None = None
    lock_duration_ms: int = 30_000
    stalled_interval_ms: int = 30_000
    max_stalled: int = 1
    ready_timeout: float | None = None
    poll_interval: float = 1.0
    error_backoff: float = 5.0
    shutdown_timeout: float = 30.0

    @classmethod
    def from_config(cls, config: QueueConfig, **overrides: Any) -> "WorkerOptions":
        options = cls(
            concurrency=config.concurrency,
            rate_limit=config.rate_limit,
            lock_duration_ms=config.lock_duration_ms,
        )
        for name, value in overrides.items():
            setattr(options, name, value)
        return options


class Worker:
    """
    Consumes one queue with bounded concurrency.

    STAGE-WORKER: Worker lifecycle

    Usage:
        worker = Worker(queue, process_job, WorkerOptions(concurrency=3))
        await worker.start()
        ...
        await worker.close()
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        options: WorkerOptions | None = None,
        settings=None,
    ):
        self._primary_queue = queue
        self.name = queue.name
        self._processor = processor
        self.options = options or WorkerOptions.from_config(queue.config)
        self._settings = settings or get_settings()
        self.events = WorkerEventBus(self.name)
        self.events.subscribe(MetricsSink())

        self._connection: BrokerClient | None = None
        self._queue: JobQueue | None = None
        self._limiter: SlidingWindowRateLimiter | None = None
        self._slots = asyncio.Semaphore(max(1, self.options.concurrency))
        self._running = asyncio.Event()
        self._stop = asyncio.Event()
        self._paused = False
        self._closing = False
        self._initialized = False
        self._loop_task: asyncio.Task | None = None
        self._stalled_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._processed = 0
        self._failed = 0

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def queue(self) -> JobQueue:
        return self._queue or self._primary_queue

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def status(self) -> dict[str, Any]:
        return {
            "queue": self.name,
            "running": self.is_running,
            "paused": self._paused,
            "inflight": len(self._inflight),
            "processed": self._processed,
            "failed": self._failed,
            "connection": self._connection.state.value if self._connection else None,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Duplicate the primary connection and wait for it to be ready.

        STAGE-WORKER.1: Initialize

        Raises:
            WorkerInitializationError: The broker is not ready within the timeout
        """
        if self._initialized:
            return

        timeout = self.options.ready_timeout
        if timeout is None:
            timeout = self._settings.queue.WORKER_READY_TIMEOUT

        primary = self._primary_queue.broker
        connection = await primary.duplicate(
            f"worker:{self.name}", keep_alive=True, ready_check=True, max_retries_per_request=None
        )
        if not await connection.wait_until_ready(timeout):
            await connection.disconnect()
            raise WorkerInitializationError(
                f"Broker not ready for worker {self.name}",
                details={"queue": self.name, "timeout": timeout, "state": connection.state.value},
            ).with_suggestion("Check BROKER_URL / BROKER_URL_DEV and broker health")

        self._connection = connection
        self._queue = self._primary_queue.with_broker(connection)
        if self.options.rate_limit is not None:
            self._limiter = SlidingWindowRateLimiter(connection)
        connection.add_state_listener(self._on_connection_state)
        self.events.subscribe(RetentionHook(self._queue), kinds=("completed", "failed"))
        self._running.set()
        self._initialized = True

        logger.info(
            "Worker initialized",
            stage="WORKER.1",
            queue=self.name,
            concurrency=self.options.concurrency,
            rate_limit=(
                f"{self.options.rate_limit.max}/{self.options.rate_limit.per_window_ms}ms"
                if self.options.rate_limit
                else None
            ),
            lock_duration_ms=self.options.lock_duration_ms,
        )

    async def start(self) -> None:
        """Initialize (if needed) and start claiming jobs."""
        await self.initialize()
        if self.is_running:
            return
        self._stop.clear()
        self._loop_task = asyncio.create_task(self._claim_loop(), name=f"worker:{self.name}")
        self._stalled_task = asyncio.create_task(self._stalled_loop(), name=f"worker:{self.name}:stalled")
        logger.info("Worker started", stage="WORKER.2", queue=self.name)

    async def pause(self, reason: str | None = None) -> None:
        """
        Stop claiming new jobs; in-flight jobs keep running.

        Idempotent.
        """
        if self._paused:
            return
        self._paused = True
        self._running.clear()
        logger.warning("Worker paused", stage="WORKER.PAUSE", queue=self.name, reason=reason)
        await self.events.emit(WorkerEvent(kind="paused", queue=self.name, extra={"reason": reason}))

    async def resume(self) -> None:
        """Resume claiming. Idempotent; ignored while closing."""
        if not self._paused or self._closing:
            return
        self._paused = False
        self._running.set()
        logger.info("Worker resumed", stage="WORKER.RESUME", queue=self.name)
        await self.events.emit(WorkerEvent(kind="resumed", queue=self.name))

    async def _on_connection_state(self, previous: BrokerState, current: BrokerState) -> None:
        if current in PAUSE_STATES:
            await self.pause(reason=f"connection {current.value}")
        elif current == BrokerState.READY:
            await self.resume()

    async def close(self, timeout: float | None = None) -> None:
        """
        Stop claiming, wait for in-flight jobs, then close the connection.

        STAGE-WORKER.9: Shutdown

        Jobs still running after the timeout are cancelled; their locks
        expire and the stalled checker of another worker reclaims them.
        """
        if self._closing:
            return
        self._closing = True
        self._stop.set()
        self._running.set()
        timeout = self.options.shutdown_timeout if timeout is None else timeout

        for task in (self._loop_task, self._stalled_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if self._inflight:
            logger.info(
                "Waiting for in-flight jobs", stage="WORKER.9", queue=self.name, inflight=len(self._inflight)
            )
            _done, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "In-flight jobs cancelled at shutdown", stage="WORKER.9", queue=self.name, cancelled=len(pending)
                )

        if self._connection is not None:
            self._connection.remove_state_listener(self._on_connection_state)
            await self._connection.disconnect()
        logger.info(
            "Worker closed",
            stage="WORKER.9",
            queue=self.name,
            processed=self._processed,
            failed=self._failed,
        )

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early when the worker is closing."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)

    # -------------------------------------------------------------------------
    # Claim loop
    # -------------------------------------------------------------------------

    async def _admit(self) -> bool:
        """Consume one unit of the worker rate limit, sleeping when exhausted."""
        limit = self.options.rate_limit
        if limit is None or self._limiter is None:
            return True
        decision = await self._limiter.check(f"worker:{self.name}", limit.max, limit.per_window_ms)
        if decision.allowed:
            return True
        await self._sleep(max(decision.retry_after_ms, 10) / 1000)
        return False

    async def _claim_loop(self) -> None:
        """
        Claim jobs while running.

        STAGE-WORKER.3: Claim loop
        """
        queue = self.queue
        while not self._closing:
            await self._running.wait()
            if self._closing:
                break
            await self._slots.acquire()
            if self._paused or self._closing:
                self._slots.release()
                continue

            try:
                if not await self._admit():
                    self._slots.release()
                    continue
                job = await queue.claim(uuid.uuid4().hex, self.options.lock_duration_ms)
            except BrokerError as e:
                self._slots.release()
                logger.warning("Job claim failed", stage="WORKER.3", queue=self.name, error=str(e))
                await self.events.emit(WorkerEvent(kind="error", queue=self.name, error=e))
                await self._sleep(self.options.error_backoff)
                continue

            if job is None:
                self._slots.release()
                await self._sleep(self.options.poll_interval)
                continue

            task = asyncio.create_task(self._run_job(job), name=f"job:{self.name}:{job.id}")
            self._inflight.add(task)
            task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        self._slots.release()

    # -------------------------------------------------------------------------
    # Job execution
    # -------------------------------------------------------------------------

    async def _extend_lock_loop(self, job: Job) -> None:
        interval = max(self.options.lock_duration_ms / 3, 100) / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.extend_lock(job, self.options.lock_duration_ms):
                    logger.warning("Job lock lost", stage="WORKER.LOCK", queue=self.name, job_id=job.id)
                    return
            except BrokerError as e:
                logger.warning("Lock extension failed", stage="WORKER.LOCK", queue=self.name, job_id=job.id, error=str(e))

    async def _run_job(self, job: Job) -> None:
        """
        Process one claimed job.

        STAGE-WORKER.4: Job execution
        """
        set_correlation_id(job.id)
        started = time.monotonic()
        extender = asyncio.create_task(self._extend_lock_loop(job))
        try:
            with structlog.contextvars.bound_contextvars(job_id=job.id, queue=self.name):
                await self.events.emit(WorkerEvent(kind="active", queue=self.name, job=job))
                try:
                    result = await self._processor(job)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    await self._handle_failure(job, e, time.monotonic() - started)
                else:
                    await self._handle_success(job, result, time.monotonic() - started)
        finally:
            extender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await extender
            clear_correlation_id()

    async def _handle_success(self, job: Job, result: Any, duration: float) -> None:
        try:
            await self.queue.complete(job)
        except (JobLockLostError, JobNotFoundError) as e:
            logger.warning("Job outcome discarded", stage="WORKER.5", queue=self.name, job_id=job.id, error=str(e))
            return
        except BrokerError as e:
            logger.error("Failed to complete job", stage="WORKER.5", queue=self.name, job_id=job.id, error=str(e))
            await self.events.emit(WorkerEvent(kind="error", queue=self.name, job=job, error=e))
            return

        self._processed += 1
        logger.info(
            "Job completed",
            stage="WORKER.5",
            queue=self.name,
            job_id=job.id,
            duration_ms=round(duration * 1000),
        )
        await self.events.emit(
            WorkerEvent(kind="completed", queue=self.name, job=job, duration_seconds=duration, result=result)
        )

    async def _handle_failure(self, job: Job, error: Exception, duration: float) -> None:
        """
        Retry the job with the queue backoff, or fail it for good.

        STAGE-WORKER.6: Failure handling

        Terminal errors (see is_retryable) and exhausted attempts fail the
        job; everything else is retried.
        """
        reason = str(error) or type(error).__name__
        final = not is_retryable(error) or job.attempts_made + 1 >= job.max_attempts
        try:
            if final:
                await self.queue.fail(job, reason)
            else:
                delay_ms = self.queue.config.backoff.delay_for(job.attempts_made + 1)
                await self.queue.retry(job, delay_ms, reason)
        except (JobLockLostError, JobNotFoundError) as e:
            logger.warning("Job outcome discarded", stage="WORKER.6", queue=self.name, job_id=job.id, error=str(e))
            return
        except BrokerError as e:
            logger.error("Failed to record job failure", stage="WORKER.6", queue=self.name, job_id=job.id, error=str(e))
            await self.events.emit(WorkerEvent(kind="error", queue=self.name, job=job, error=e))
            return

        if final:
            self._failed += 1
        log = logger.error if final else logger.warning
        log(
            "Job failed",
            stage="WORKER.6",
            queue=self.name,
            job_id=job.id,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            final=final,
            error_type=type(error).__name__,
            error=reason,
        )
        await self.events.emit(
            WorkerEvent(kind="failed", queue=self.name, job=job, duration_seconds=duration, final=final, error=error)
        )

    # -------------------------------------------------------------------------
    # Stalled jobs
    # -------------------------------------------------------------------------

    async def check_stalled(self) -> tuple[list[str], list[str]]:
        requeued, failed = await self.queue.move_stalled(self.options.max_stalled)
        if requeued or failed:
            logger.warning(
                "Stalled jobs recovered",
                stage="WORKER.STALLED",
                queue=self.name,
                requeued=len(requeued),
                failed=len(failed),
            )
        return requeued, failed

    async def _stalled_loop(self) -> None:
        while not self._closing:
            await self._sleep(self.options.stalled_interval_ms / 1000)
            if self._closing or self._paused:
                continue
            try:
                await self.check_stalled()
            except BrokerError as e:
                logger.warning("Stalled check failed", stage="WORKER.STALLED", queue=self.name, error=str(e))
