"""
Engagement Backfill Queue

Recomputes the engagement score of every active user on demand. One run
is tracked in the broker hash ``engagement-backfill:current-run``
(total, completed, failed, started_at; 24 h TTL) which workers increment
atomically.
"""

from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa

from engagement_backbone.config.constants import (
    BACKFILL_RUN_KEY,
    JOB_BACKFILL_USER,
    QUEUE_ENGAGEMENT_BACKFILL,
    QUEUE_MONITOR_CHANNEL,
)
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broadcast import Broadcaster
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.infrastructure.database.models import User
from engagement_backbone.queueing.job import BackoffPolicy, JobOptions, JobSpec, QueueConfig, RetentionPolicy
from engagement_backbone.queueing.job_queue import JobQueue

logger = get_logger(__name__)

BACKFILL_QUEUE_CONFIG = QueueConfig(
    name=QUEUE_ENGAGEMENT_BACKFILL,
    default_attempts=3,
    backoff=BackoffPolicy("exponential", 2000),
    retention_completed=RetentionPolicy(age_seconds=3600, max_count=100),
    retention_failed=RetentionPolicy(age_seconds=7200, max_count=50),
    concurrency=10,
    lock_duration_ms=300_000,
)

RUN_TTL_SECONDS = 86_400
ENQUEUE_PROGRESS_EVENT = "backfill_enqueue_progress"


def backfill_job_id(user_id: int) -> str:
    return f"backfill-user-{user_id}"


class EngagementBackfillQueue:
    """
    Admission and progress of engagement backfill runs.

    Usage:
        backfill = EngagementBackfillQueue.create(broker, database)
        await backfill.start_backfill()
        await backfill.get_progress()
    """

    def __init__(self, queue: JobQueue, database: Database, broadcaster: Broadcaster | None = None):
        self.queue = queue
        self.database = database
        self.broadcaster = broadcaster

    @classmethod
    def create(
        cls, broker: BrokerClient, database: Database, settings=None, broadcaster: Broadcaster | None = None
    ) -> "EngagementBackfillQueue":
        return cls(JobQueue(BACKFILL_QUEUE_CONFIG, broker, settings=settings), database, broadcaster)

    @property
    def broker(self) -> BrokerClient:
        return self.queue.broker

    async def start_backfill(self) -> dict[str, Any]:
        """
        Enqueue one score job per active user and reset the run metrics.

        STAGE-ENG.0: Start backfill

        Jobs are admitted in outer batches; enqueue progress goes to the
        admin queue monitor after each batch.

        Raises:
            BrokerError: The run hash could not be written
        """
        async with self.database.session() as session:
            rows = (
                await session.execute(
                    sa.select(User.id, User.email, User.display_name).where(User.active.is_(True)).order_by(User.id)
                )
            ).all()

        if not rows:
            logger.info("No active users to backfill", stage="ENG.0")
            return {"success": True, "jobs_enqueued": 0, "message": "No active users found to backfill"}

        commands = self.broker.commands
        await commands.delete(BACKFILL_RUN_KEY)
        await commands.hset(
            BACKFILL_RUN_KEY,
            {
                "total": len(rows),
                "completed": 0,
                "failed": 0,
                "started_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await commands.expire(BACKFILL_RUN_KEY, RUN_TTL_SECONDS)

        jobs = [
            JobSpec(
                name=JOB_BACKFILL_USER,
                data={"user_id": user_id, "email": email, "display_name": display_name or email},
                options=JobOptions(job_id=backfill_job_id(user_id)),
            )
            for user_id, email, display_name in rows
        ]
        result = await self.queue.enqueue_bulk_with_progress(jobs, on_progress=self._report_enqueue)

        logger.info("Engagement backfill started", stage="ENG.0", users=len(rows), **result.to_dict())
        return {
            "success": True,
            "jobs_enqueued": result.enqueued,
            "message": f"Enqueued {result.enqueued} of {len(rows)} active users",
        }

    async def _report_enqueue(self, enqueued: int, total: int) -> None:
        logger.info("Backfill enqueue progress", stage="ENG.0", enqueued=enqueued, total=total)
        if self.broadcaster is not None:
            await self.broadcaster.publish(
                QUEUE_MONITOR_CHANNEL,
                ENQUEUE_PROGRESS_EVENT,
                {"queue": self.queue.name, "enqueued": enqueued, "total": total},
            )

    async def run_metrics(self) -> dict[str, int]:
        raw = await self.broker.commands.hgetall(BACKFILL_RUN_KEY)
        return {name: int(raw.get(name) or 0) for name in ("total", "completed", "failed")}

    async def get_progress(self) -> dict[str, Any]:
        """
        Queue depth plus run metrics.

        STAGE-ENG.3: Progress
        """
        counts = await self.queue.stats()
        if "error" in counts:
            return {**counts, "is_running": False, "progress": 0}
        run = await self.run_metrics()
        total = run["total"]
        return {
            "waiting": counts["waiting"],
            "active": counts["active"],
            "completed": run["completed"],
            "failed": run["failed"],
            "total": total,
            "is_running": counts["active"] > 0 or counts["waiting"] > 0 or counts["delayed"] > 0,
            "progress": round(run["completed"] / total * 100) if total else 0,
        }

    async def increment(self, field: str) -> int:
        return await self.broker.commands.hincrby(BACKFILL_RUN_KEY, field, 1)

    async def clean(self) -> dict[str, Any]:
        return {
            "success": True,
            "completed": await self.queue.clear_completed(),
            "failed": await self.queue.clear_failed(),
        }

    async def close(self) -> None:
        await self.queue.close()
