"""
Cache Service

Owns one DistributedCache per namespace and the targeted invalidation
helpers used by pipelines and request handlers.

Key conventions:
    leaderboard            "<period>:<limit>"         limits 5, 10, 50
    leaderboard_position   "<user_id>:<period>"      all_time, week, month
    per-user namespaces    "user:<id>"
    guidance               "user:<id>:<context>"     plus "user:<id>:all"
"""

from typing import Any

from engagement_backbone.config.constants import (
    LEADERBOARD_LIMITS,
    LEADERBOARD_PERIODS,
    NAMESPACE_TTLS,
    PAGE_CONTEXTS,
    CacheNamespace,
)
from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient
from engagement_backbone.infrastructure.cache.distributed_cache import DistributedCache

logger = get_logger(__name__)


def user_key(user_id: int) -> str:
    return f"user:{user_id}"


def guidance_key(user_id: int, context: str) -> str:
    return f"user:{user_id}:{context}"


def leaderboard_key(period: str, limit: int) -> str:
    return f"{period}:{limit}"


def leaderboard_position_key(user_id: int, period: str) -> str:
    return f"{user_id}:{period}"


class CacheService:
    """
    Namespace registry plus invalidation helpers.

    Usage:
        cache = CacheService(broker)
        await cache.namespace(CacheNamespace.LEADERBOARD).get("all_time:50")
        await cache.invalidate(CacheNamespace.LEADERBOARD)
        await cache.invalidate_user_derived(42)
    """

    def __init__(self, broker: BrokerClient | None, settings=None):
        settings = settings or get_settings()
        self._caches: dict[CacheNamespace, DistributedCache] = {
            namespace: DistributedCache(
                namespace.value,
                broker,
                default_ttl=ttl,
                single_instance=settings.cache.CACHE_SINGLE_INSTANCE,
                scan_count=settings.cache.CACHE_CLEAR_SCAN_COUNT,
            )
            for namespace, ttl in NAMESPACE_TTLS.items()
        }

    def namespace(self, namespace: CacheNamespace | str) -> DistributedCache:
        return self._caches[CacheNamespace(namespace)]

    async def get(self, namespace: CacheNamespace | str, key: str) -> Any:
        return await self.namespace(namespace).get(key)

    async def set(self, namespace: CacheNamespace | str, key: str, value: Any, ttl: int | None = None) -> bool:
        return await self.namespace(namespace).set(key, value, ttl)

    async def invalidate(self, namespace: CacheNamespace | str, key: str | None = None) -> int:
        """
        Invalidate one key, or the whole namespace when key is None.

        STAGE-2.6: Targeted invalidation

        Callers invalidate before writing new authoritative state.
        """
        cache = self.namespace(namespace)
        if key is None:
            return await cache.clear()
        return 1 if await cache.delete(key) else 0

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def invalidate_leaderboard(self, period: str | None = None) -> int:
        if period is None:
            return await self.invalidate(CacheNamespace.LEADERBOARD)
        removed = 0
        for limit in LEADERBOARD_LIMITS:
            removed += await self.invalidate(CacheNamespace.LEADERBOARD, leaderboard_key(period, limit))
        return removed

    async def invalidate_leaderboard_position(self, user_id: int) -> int:
        removed = 0
        for period in LEADERBOARD_PERIODS:
            removed += await self.invalidate(
                CacheNamespace.LEADERBOARD_POSITION, leaderboard_position_key(user_id, period)
            )
        return removed

    async def invalidate_user_classification(self, user_id: int) -> int:
        return await self.invalidate(CacheNamespace.USER_CLASSIFICATION, user_key(user_id))

    async def invalidate_progress(self, user_id: int) -> int:
        return await self.invalidate(CacheNamespace.PROGRESS, user_key(user_id))

    async def invalidate_coinbook(self, user_id: int) -> int:
        return await self.invalidate(CacheNamespace.COINBOOK, user_key(user_id))

    async def invalidate_guidance(self, user_id: int) -> int:
        removed = 0
        for context in (*PAGE_CONTEXTS, "all"):
            removed += await self.invalidate(CacheNamespace.GUIDANCE, guidance_key(user_id, context))
        return removed

    async def invalidate_user_derived(self, user_id: int) -> int:
        """Drop classification, progress and guidance entries of one user."""
        removed = await self.invalidate_user_classification(user_id)
        removed += await self.invalidate_progress(user_id)
        removed += await self.invalidate_guidance(user_id)
        logger.debug("User-derived caches invalidated", stage="2.6", user_id=user_id, removed=removed)
        return removed

    def stats(self) -> dict[str, Any]:
        return {namespace.value: cache.stats() for namespace, cache in self._caches.items()}
