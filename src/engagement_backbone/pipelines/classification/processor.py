"""
Classification Worker

Per job ({user_id, reason}):
    1. classify the user and store the classification row
    2. invalidate the user's classification, progress and guidance caches
    3. compute guidance for every page context and upsert it
    4. record last_calc_time (1 h TTL) for the debounce

Steps 1-3 are one worker-pool unit of work, rerun on a transient store
error. A guidance write failure fails the job so that success implies
one guidance row per page context.
"""

from typing import Any

from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.cache.cache_service import CacheService
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.pipelines.classification.queue import ClassificationQueue
from engagement_backbone.queueing.job import Job
from engagement_backbone.queueing.worker import Worker, WorkerOptions
from engagement_backbone.services.guidance import GuidanceService
from engagement_backbone.services.user_classification import ClassificationResult, UserClassificationService
from engagement_backbone.services.user_stats import gather_user_stats

logger = get_logger(__name__)


class ClassificationProcessor:
    def __init__(self, classification: ClassificationQueue, database: Database, cache: CacheService):
        self.classification = classification
        self.database = database
        self.cache = cache

    async def _classify(self, session, user_id: int) -> tuple[ClassificationResult, int]:
        stats = await gather_user_stats(session, user_id)
        result = await UserClassificationService(session).classify_user(user_id, stats=stats)
        await self.cache.invalidate_user_derived(user_id)
        contexts = await GuidanceService(session).refresh(result, stats)
        return result, contexts

    async def __call__(self, job: Job) -> dict[str, Any]:
        """
        Classify one user and pre-render their guidance.

        STAGE-CLS.2: Classification job
        """
        user_id = int(job.data["user_id"])
        reason = job.data.get("reason", "activity")

        result, contexts = await self.database.run_in_session(self._classify, user_id, stage="CLS.2")

        await self.classification.mark_calculated(user_id)
        logger.info(
            "Classification job done",
            stage="CLS.2",
            user_id=user_id,
            reason=reason,
            journey_stage=result.journey_stage,
            guidance_contexts=contexts,
        )
        return {
            "user_id": user_id,
            "journey_stage": result.journey_stage,
            "engagement_level": result.engagement_level,
            "guidance_contexts": contexts,
        }


def build_classification_worker(
    classification: ClassificationQueue,
    database: Database,
    cache: CacheService,
    settings=None,
    **overrides: Any,
) -> Worker:
    """Worker with concurrency 5 and 10 jobs/s."""
    queue = classification.queue
    return Worker(
        queue,
        ClassificationProcessor(classification, database, cache),
        WorkerOptions.from_config(queue.config, **overrides),
        settings=settings,
    )
