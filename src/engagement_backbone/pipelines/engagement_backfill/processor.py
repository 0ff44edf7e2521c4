"""
Engagement Backfill Worker

Recalculates one user's engagement score per job, then bumps the run
metrics: ``completed`` after success, ``failed`` after a final failure.
Milestones are logged each time the run crosses another 25%.
"""

from typing import Any

from engagement_backbone.core.exceptions import BrokerError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.pipelines.engagement_backfill.queue import EngagementBackfillQueue
from engagement_backbone.queueing.events import WorkerEvent
from engagement_backbone.queueing.job import Job
from engagement_backbone.queueing.worker import Worker, WorkerOptions
from engagement_backbone.services.engagement_score import EngagementScoreService

logger = get_logger(__name__)

MILESTONE_STEPS = 4


def crossed_milestone(completed: int, total: int) -> int | None:
    """Percentage milestone (25, 50, 75, 100) reached by this completion, if any."""
    if total <= 0 or completed <= 0:
        return None
    now = completed * MILESTONE_STEPS // total
    before = (completed - 1) * MILESTONE_STEPS // total
    if now > before:
        return min(now, MILESTONE_STEPS) * 100 // MILESTONE_STEPS
    return None


async def _recalculate(session, user_id: int) -> dict[str, Any]:
    return await EngagementScoreService(session).recalculate_user_score(user_id)


class BackfillProcessor:
    def __init__(self, backfill: EngagementBackfillQueue, database: Database):
        self.backfill = backfill
        self.database = database

    async def __call__(self, job: Job) -> dict[str, Any]:
        """
        STAGE-ENG.1: Backfill job
        """
        user_id = int(job.data["user_id"])
        score = await self.database.run_in_session(_recalculate, user_id, stage="ENG.1")

        try:
            completed = await self.backfill.increment("completed")
            total = (await self.backfill.run_metrics())["total"]
        except BrokerError as e:
            logger.warning("Run metrics not updated", stage="ENG.2", user_id=user_id, error=str(e))
        else:
            milestone = crossed_milestone(completed, total)
            if milestone is not None:
                logger.info(
                    "Engagement backfill milestone",
                    stage="ENG.2",
                    milestone=f"{milestone}%",
                    completed=completed,
                    total=total,
                )
        return {"user_id": user_id, "engagement_score": score["engagement_score"]}

    async def on_failed(self, event: WorkerEvent) -> None:
        if not event.final:
            return
        try:
            await self.backfill.increment("failed")
        except BrokerError as e:
            logger.warning("Run metrics not updated", stage="ENG.2", error=str(e))


def build_backfill_worker(
    backfill: EngagementBackfillQueue,
    database: Database,
    settings=None,
    **overrides: Any,
) -> Worker:
    """Worker with concurrency 10 and a 5-minute lock."""
    processor = BackfillProcessor(backfill, database)
    worker = Worker(
        backfill.queue,
        processor,
        WorkerOptions.from_config(backfill.queue.config, **overrides),
        settings=settings,
    )
    worker.events.subscribe(processor.on_failed, kinds=("failed",))
    return worker
