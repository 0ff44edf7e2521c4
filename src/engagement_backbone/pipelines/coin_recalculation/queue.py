"""
Coin Recalculation Queue

Admission of coin re-evaluation jobs triggered by order cancellations,
fulfillment downgrades and administrative actions. Job ids carry the
enqueue time (``recalc-<user_id>-<ms>``) so repeated events for one user
are all processed.
"""

from collections.abc import Callable
from typing import Any

from engagement_backbone.config.constants import (
    COIN_TYPE_ALL,
    COLLECTION_COIN_TYPES,
    ENGAGEMENT_COIN_TYPES,
    JOB_RECALCULATE_COINS,
    QUEUE_COIN_RECALCULATION,
)
from engagement_backbone.core.exceptions import UnknownCoinTypeError
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

COIN_QUEUE_CONFIG = QueueConfig(
    name=QUEUE_COIN_RECALCULATION,
    default_attempts=3,
    backoff=BackoffPolicy("exponential", 2000),
    retention_completed=RetentionPolicy(age_seconds=3600, max_count=100),
    retention_failed=RetentionPolicy(age_seconds=86_400, max_count=1000),
    concurrency=3,
    rate_limit=RateLimit(max=5, per_window_ms=1000),
)

SUPPORTED_COIN_TYPES = (COIN_TYPE_ALL, *ENGAGEMENT_COIN_TYPES, *COLLECTION_COIN_TYPES)


class CoinRecalculationQueue:
    def __init__(self, queue: JobQueue, clock: Callable[[], int] = now_ms):
        self.queue = queue
        self._clock = clock

    @classmethod
    def create(cls, broker: BrokerClient, settings=None) -> "CoinRecalculationQueue":
        return cls(JobQueue(COIN_QUEUE_CONFIG, broker, settings=settings))

    async def enqueue(
        self,
        user_id: int,
        coin_type: str = COIN_TYPE_ALL,
        reason: str = "admin_action",
        context: dict[str, Any] | None = None,
    ) -> EnqueueResult:
        """
        Enqueue one recalculation.

        STAGE-COIN.0: Enqueue

        Raises:
            UnknownCoinTypeError: coin_type is not routable
            BrokerError: The broker refused the job
        """
        if coin_type not in SUPPORTED_COIN_TYPES:
            raise UnknownCoinTypeError(
                f"Unknown coin type: {coin_type}", details={"coin_type": coin_type, "supported": SUPPORTED_COIN_TYPES}
            )
        enqueued_at = self._clock()
        data = {
            "user_id": user_id,
            "coin_type": coin_type,
            "reason": reason,
            "context": context or {},
            "enqueued_at": enqueued_at,
        }
        options = JobOptions(
            job_id=f"recalc-{user_id}-{enqueued_at}",
            priority=1 if reason == "order_cancelled" else 10,
        )
        result = await self.queue.enqueue(JOB_RECALCULATE_COINS, data, options)
        logger.info(
            "Coin recalculation enqueued",
            stage="COIN.0",
            user_id=user_id,
            coin_type=coin_type,
            reason=reason,
            job_id=result.job_id,
        )
        return result

    async def stats(self) -> dict[str, Any]:
        return await self.queue.stats()

    async def close(self) -> None:
        await self.queue.close()
