"""
Coin Recalculation Worker

Per job ({user_id, coin_type, reason, context}):
    1. invalidate the user's progress, coinbook, leaderboard and
       leaderboard-position caches
    2. run the manager(s) selected by coin_type in one worker-pool session
    3. broadcast an achievement update

Invalidation precedes the write, like every other pipeline: a reader
racing the job recomputes, or sees the old value until its TTL expires.
Step 2 is rerun on a transient store error. Cache steps are best-effort
(the cache service never raises).
"""

from typing import Any

from engagement_backbone.config.constants import COIN_TYPE_ALL, COLLECTION_COIN_TYPES, ENGAGEMENT_COIN_TYPES
from engagement_backbone.core.exceptions import UnknownCoinTypeError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broadcast import Broadcaster
from engagement_backbone.infrastructure.cache.cache_service import CacheService
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.pipelines.coin_recalculation.queue import CoinRecalculationQueue
from engagement_backbone.queueing.job import Job
from engagement_backbone.queueing.worker import Worker, WorkerOptions
from engagement_backbone.services.coin_managers import CoinManager, CollectionManager, EngagementManager
from engagement_backbone.services.user_stats import gather_user_stats

logger = get_logger(__name__)

ACHIEVEMENTS_CHANNEL = "achievements"
ACHIEVEMENT_UPDATE_EVENT = "achievement_update"


def managers_for(coin_type: str) -> tuple[type[CoinManager], ...]:
    """
    Manager classes responsible for one coin type.

    Raises:
        UnknownCoinTypeError: coin_type is not routable (terminal)
    """
    if coin_type == COIN_TYPE_ALL:
        return (EngagementManager, CollectionManager)
    if coin_type in ENGAGEMENT_COIN_TYPES:
        return (EngagementManager,)
    if coin_type in COLLECTION_COIN_TYPES:
        return (CollectionManager,)
    raise UnknownCoinTypeError(f"Unknown coin type: {coin_type}", details={"coin_type": coin_type})


async def _run_managers(
    session, user_id: int, managers: tuple[type[CoinManager], ...], context: dict[str, Any]
) -> list:
    stats = await gather_user_stats(session, user_id)
    results = []
    for manager_cls in managers:
        results.append(await manager_cls(session).recalculate_user_coins(user_id, context=context, stats=stats))
    return results


class CoinRecalculationProcessor:
    def __init__(self, database: Database, cache: CacheService, broadcaster: Broadcaster):
        self.database = database
        self.cache = cache
        self.broadcaster = broadcaster

    async def __call__(self, job: Job) -> dict[str, Any]:
        """
        STAGE-COIN.1: Recalculation job
        """
        user_id = int(job.data["user_id"])
        coin_type = job.data.get("coin_type", COIN_TYPE_ALL)
        reason = job.data.get("reason")
        context = {**(job.data.get("context") or {}), "reason": reason}

        managers = managers_for(coin_type)

        await self.cache.invalidate_progress(user_id)
        await self.cache.invalidate_coinbook(user_id)
        await self.cache.invalidate_leaderboard()
        await self.cache.invalidate_leaderboard_position(user_id)

        results = await self.database.run_in_session(
            _run_managers, user_id, managers, context, stage="COIN.1"
        )

        awarded = [code for r in results for code in r.awarded]
        revoked = [code for r in results for code in r.revoked]
        await self.broadcaster.publish(
            ACHIEVEMENTS_CHANNEL,
            ACHIEVEMENT_UPDATE_EVENT,
            {"user_id": user_id, "coin_type": coin_type, "reason": reason, "awarded": awarded, "revoked": revoked},
        )

        logger.info(
            "Coin recalculation done",
            stage="COIN.1",
            user_id=user_id,
            coin_type=coin_type,
            reason=reason,
            awarded=len(awarded),
            revoked=len(revoked),
        )
        return {
            "user_id": user_id,
            "coin_type": coin_type,
            "managers": [r.to_dict() for r in results],
        }


def build_coin_worker(
    coins: CoinRecalculationQueue,
    database: Database,
    cache: CacheService,
    broadcaster: Broadcaster,
    settings=None,
    **overrides: Any,
) -> Worker:
    """Worker with concurrency 3 and 5 jobs/s."""
    queue = coins.queue
    return Worker(
        queue,
        CoinRecalculationProcessor(database, cache, broadcaster),
        WorkerOptions.from_config(queue.config, **overrides),
        settings=settings,
    )
