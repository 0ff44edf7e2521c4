"""
Classification Queue

Smart hybrid debounce in front of the user-classification queue:

- First activity of a user → enqueue immediately
- Later activity → at most one enqueue per user per 5-minute window,
  measured from the last successful classification
- Job id ``user-<id>`` keeps at most one live job per user
- Purchases get priority 1, any other reason priority 10
"""

from collections.abc import Callable
from typing import Any

from engagement_backbone.config.constants import (
    CLASSIFICATION_LAST_CALC_KEY,
    CLASSIFICATION_LAST_CALC_TTL,
    CLASSIFICATION_THROTTLE_SECONDS,
    JOB_CLASSIFY_USER,
    QUEUE_USER_CLASSIFICATION,
)
from engagement_backbone.core.exceptions import BrokerError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient
from engagement_backbone.queueing.job import (
    BackoffPolicy,
    EnqueueResult,
    JobOptions,
    QueueConfig,
    RateLimit,
    RetentionPolicy,
)
from engagement_backbone.queueing.job_queue import JobQueue, now_ms

logger = get_logger(__name__)

CLASSIFICATION_QUEUE_CONFIG = QueueConfig(
    name=QUEUE_USER_CLASSIFICATION,
    default_attempts=3,
    backoff=BackoffPolicy("exponential", 2000),
    retention_completed=RetentionPolicy(age_seconds=3600, max_count=100),
    retention_failed=RetentionPolicy(age_seconds=86_400, max_count=1000),
    concurrency=5,
    rate_limit=RateLimit(max=10, per_window_ms=1000),
)

PRIORITY_PURCHASE = 1
PRIORITY_DEFAULT = 10


def classification_job_id(user_id: int) -> str:
    return f"user-{user_id}"


def last_calc_key(user_id: int) -> str:
    return CLASSIFICATION_LAST_CALC_KEY.format(user_id=user_id)


class ClassificationQueue:
    """
    Debounced admission to the user-classification queue.

    Usage:
        classification = ClassificationQueue.create(broker)
        await classification.enqueue(42, reason="ranking")
    """

    def __init__(self, queue: JobQueue, clock: Callable[[], int] = now_ms):
        self.queue = queue
        self._clock = clock

    @classmethod
    def create(cls, broker: BrokerClient, settings=None) -> "ClassificationQueue":
        return cls(JobQueue(CLASSIFICATION_QUEUE_CONFIG, broker, settings=settings))

    @property
    def broker(self) -> BrokerClient:
        return self.queue.broker

    async def last_calc_time(self, user_id: int) -> int | None:
        raw = await self.broker.commands.get(last_calc_key(user_id))
        return int(raw) if raw else None

    async def should_enqueue(self, user_id: int) -> bool:
        """
        True when the user has no recent classification.

        An unreachable broker answers True: the per-user job id still
        dedupes whatever does get through.
        """
        try:
            last = await self.last_calc_time(user_id)
        except BrokerError as e:
            logger.warning("Debounce check failed, allowing enqueue", stage="CLS.0", user_id=user_id, error=str(e))
            return True
        if last is None:
            return True
        return (self._clock() - last) / 1000 >= CLASSIFICATION_THROTTLE_SECONDS

    async def mark_calculated(self, user_id: int) -> None:
        """Record a successful classification (1 h TTL)."""
        try:
            await self.broker.commands.set(last_calc_key(user_id), str(self._clock()), ex=CLASSIFICATION_LAST_CALC_TTL)
        except BrokerError as e:
            logger.warning("Could not record classification time", stage="CLS.4", user_id=user_id, error=str(e))

    async def enqueue(self, user_id: int, reason: str = "activity", force: bool = False) -> EnqueueResult | None:
        """
        Enqueue a classification of one user.

        STAGE-CLS.0: Debounced enqueue

        Args:
            user_id: User to classify
            reason: Trigger ('ranking', 'search', 'purchase', 'import', ...)
            force: Skip the debounce (administrative action)

        Returns:
            EnqueueResult, or None when throttled

        Raises:
            BrokerError: The broker refused the job
        """
        if not force and not await self.should_enqueue(user_id):
            logger.debug("Classification throttled", stage="CLS.0", user_id=user_id, reason=reason)
            return None

        data: dict[str, Any] = {"user_id": user_id, "reason": reason, "enqueued_at": self._clock()}
        options = JobOptions(
            job_id=classification_job_id(user_id),
            priority=PRIORITY_PURCHASE if reason == "purchase" else PRIORITY_DEFAULT,
        )
        result = await self.queue.enqueue(JOB_CLASSIFY_USER, data, options)
        logger.info(
            "Classification enqueued",
            stage="CLS.0",
            user_id=user_id,
            reason=reason,
            forced=force,
            created=result.created,
        )
        return result

    async def stats(self) -> dict[str, Any]:
        return await self.queue.stats()

    async def clean(self) -> dict[str, int]:
        return {"completed": await self.queue.clear_completed(), "failed": await self.queue.clear_failed()}

    async def close(self) -> None:
        await self.queue.close()
