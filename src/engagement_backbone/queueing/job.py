"""
Job Model and Queue Configuration

Plain dataclasses shared by the queue, the worker runtime and the
pipelines. Jobs are stored as broker hashes; from_hash() rebuilds them.
"""

from dataclasses import asdict, dataclass, field
from typing import Any

import orjson

from engagement_backbone.config.constants import JobState


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before attempt n+1: fixed delay, or delay * 2^(n-1)."""

    type: str = "exponential"
    delay_ms: int = 2000

    def delay_for(self, attempts_made: int) -> int:
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * (2 ** max(0, attempts_made - 1))


@dataclass(frozen=True)
class RetentionPolicy:
    age_seconds: int
    max_count: int


@dataclass(frozen=True)
class RateLimit:
    max: int
    per_window_ms: int


@dataclass(frozen=True)
class QueueConfig:
    """
    Configuration of one named queue and its worker.

    lock_duration_ms bounds how long a claimed job stays exclusive without
    a renewal; workers renew at roughly a third of it.
    """

    name: str
    default_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    retention_completed: RetentionPolicy = field(default_factory=lambda: RetentionPolicy(7200, 50_000))
    retention_failed: RetentionPolicy = field(default_factory=lambda: RetentionPolicy(86_400, 10_000))
    concurrency: int = 1
    rate_limit: RateLimit | None = None
    lock_duration_ms: int = 30_000


@dataclass
class JobOptions:
    job_id: str | None = None
    priority: int = 0
    delay_ms: int = 0
    attempts: int | None = None

    def to_json(self, default_attempts: int) -> str:
        payload = asdict(self)
        payload["attempts"] = self.attempts or default_attempts
        return orjson.dumps(payload).decode("utf-8")


@dataclass
class JobSpec:
    """One job of a bulk enqueue."""

    name: str
    data: dict[str, Any]
    options: JobOptions = field(default_factory=JobOptions)


@dataclass
class Job:
    id: str
    name: str
    data: dict[str, Any]
    queue: str
    priority: int = 0
    attempts_made: int = 0
    max_attempts: int = 3
    state: JobState = JobState.WAITING
    enqueued_at: int | None = None
    delay_ms: int = 0
    processed_at: int | None = None
    finished_at: int | None = None
    failure_reason: str | None = None
    stalled_count: int = 0
    lock_token: str | None = None

    @classmethod
    def from_hash(cls, queue: str, job_id: str, raw: dict[str, str]) -> "Job":
        opts = orjson.loads(raw["opts"]) if raw.get("opts") else {}

        def _int(name: str) -> int | None:
            value = raw.get(name)
            return int(value) if value not in (None, "") else None

        return cls(
            id=job_id,
            name=raw.get("name", ""),
            data=orjson.loads(raw["data"]) if raw.get("data") else {},
            queue=queue,
            priority=_int("priority") or 0,
            attempts_made=_int("attempts_made") or 0,
            max_attempts=int(opts.get("attempts") or 1),
            state=JobState(raw.get("state", JobState.WAITING.value)),
            enqueued_at=_int("timestamp"),
            delay_ms=_int("delay") or 0,
            processed_at=_int("processed_on"),
            finished_at=_int("finished_on"),
            failure_reason=raw.get("failed_reason") or None,
            stalled_count=_int("stalled_counter") or 0,
        )

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "priority": self.priority,
            "attempts_made": self.attempts_made,
            "state": self.state.value,
            "enqueued_at": self.enqueued_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True)
class EnqueueResult:
    job_id: str
    created: bool


@dataclass
class BulkEnqueueResult:
    """Outcome of enqueue_bulk; duplicates count as enqueued."""

    total: int = 0
    enqueued: int = 0
    duplicates: int = 0
    failed: int = 0
    chunks: int = 0
    fallback_chunks: int = 0
    ledger_rows: int = 0

    def merge(self, other: "BulkEnqueueResult") -> None:
        self.total += other.total
        self.enqueued += other.enqueued
        self.duplicates += other.duplicates
        self.failed += other.failed
        self.chunks += other.chunks
        self.fallback_chunks += other.fallback_chunks
        self.ledger_rows += other.ledger_rows

    def to_dict(self) -> dict[str, int]:
        return asdict(self)
