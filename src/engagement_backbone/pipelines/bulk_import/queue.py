"""
Bulk Import Queue

Per-user import jobs on the ``bulk-import`` queue. Admission goes through
the chunked bulk path with the failed-enqueue ledger enabled, so users the
broker refuses are recorded and replayed by retry_failed_enqueues().

Author: Platform Engineering
Date: 2026-03-06
"""

from typing import Any

import sqlalchemy as sa

from engagement_backbone.config.constants import JOB_IMPORT_USER, QUEUE_BULK_IMPORT, ImportStatus
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.infrastructure.database.failed_enqueue import FailedEnqueueLedger
from engagement_backbone.infrastructure.database.models import User
from engagement_backbone.queueing.job import (
    BackoffPolicy,
    BulkEnqueueResult,
    EnqueueResult,
    JobOptions,
    JobSpec,
    QueueConfig,
    RateLimit,
    RetentionPolicy,
)
from engagement_backbone.queueing.job_queue import JobQueue, now_ms

logger = get_logger(__name__)

IMPORT_QUEUE_CONFIG = QueueConfig(
    name=QUEUE_BULK_IMPORT,
    default_attempts=3,
    backoff=BackoffPolicy("exponential", 5000),
    retention_completed=RetentionPolicy(age_seconds=7200, max_count=50_000),
    retention_failed=RetentionPolicy(age_seconds=86_400, max_count=10_000),
    concurrency=3,
    rate_limit=RateLimit(max=5, per_window_ms=1000),
)

PENDING_PAGE_SIZE = 5000


def import_job_id(user_id: int) -> str:
    return f"import-user-{user_id}"


def import_job(user_id: int, external_id: str, email: str) -> JobSpec:
    return JobSpec(
        name=JOB_IMPORT_USER,
        data={"user_id": user_id, "external_id": external_id, "email": email, "enqueued_at": now_ms()},
        options=JobOptions(job_id=import_job_id(user_id)),
    )


class BulkImportQueue:
    """
    Admission, inspection and maintenance of the bulk-import queue.

    Usage:
        imports = BulkImportQueue.create(broker, database)
        await imports.enqueue_bulk([{"user_id": 1, "external_id": "77", "email": "a@b.c"}])
    """

    def __init__(self, queue: JobQueue, database: Database):
        self.queue = queue
        self.database = database

    @classmethod
    def create(cls, broker: BrokerClient, database: Database, settings=None) -> "BulkImportQueue":
        queue = JobQueue(IMPORT_QUEUE_CONFIG, broker, ledger=FailedEnqueueLedger(database), settings=settings)
        return cls(queue, database)

    async def enqueue_user_import(self, user_id: int, external_id: str, email: str) -> EnqueueResult:
        """Raises BrokerError when the broker refuses the job."""
        spec = import_job(user_id, external_id, email)
        return await self.queue.enqueue(spec.name, spec.data, spec.options)

    async def enqueue_bulk(self, users: list[dict[str, Any]], chunk_size: int | None = None) -> BulkEnqueueResult:
        """
        Enqueue one import job per ``{user_id, external_id, email}``.

        STAGE-IMP.3: Import admission
        """
        jobs = [import_job(int(u["user_id"]), str(u["external_id"]), u["email"]) for u in users]
        return await self.queue.enqueue_bulk(jobs, chunk_size=chunk_size)

    async def enqueue_all_pending_users(self, page_size: int = PENDING_PAGE_SIZE) -> dict[str, Any]:
        """
        Enqueue every user whose import is still pending, paging by id.

        STAGE-IMP.5: Resume pending imports
        """
        last_id = 0
        result = BulkEnqueueResult()
        while True:
            async with self.database.session() as session:
                rows = (
                    await session.execute(
                        sa.select(User.id, User.external_id, User.email)
                        .where(User.import_status == ImportStatus.PENDING.value, User.id > last_id)
                        .order_by(User.id)
                        .limit(page_size)
                    )
                ).all()
            if not rows:
                break
            last_id = rows[-1].id
            logger.info("Enqueuing pending users", stage="IMP.5", batch=len(rows), after_id=last_id)
            result.merge(
                await self.enqueue_bulk(
                    [{"user_id": r.id, "external_id": r.external_id, "email": r.email} for r in rows]
                )
            )
            if len(rows) < page_size:
                break

        logger.info("Pending users enqueued", stage="IMP.5", **result.to_dict())
        return {"success": True, "enqueued": result.enqueued, "failed": result.failed, "total": result.total}

    async def retry_failed_enqueues(self, limit: int = 100) -> dict[str, int]:
        return await self.queue.retry_failed_enqueues(limit=limit)

    async def stats(self) -> dict[str, Any]:
        return await self.queue.stats()

    async def get_recent_jobs(self, limit: int = 10) -> list[dict[str, Any]]:
        jobs = await self.queue.recent_jobs(limit)
        return [
            {
                "id": job.id,
                "user_id": job.data.get("user_id"),
                "email": job.data.get("email"),
                "state": job.state.value,
                "failed_reason": job.failure_reason,
                "processed_on": job.processed_at,
                "finished_on": job.finished_at,
            }
            for job in jobs
        ]

    async def clean(self) -> dict[str, Any]:
        return {
            "success": True,
            "completed": await self.queue.clear_completed(),
            "failed": await self.queue.clear_failed(),
        }

    async def close(self) -> None:
        await self.queue.close()
