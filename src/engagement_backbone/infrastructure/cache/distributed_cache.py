#!/usr/bin/env python3
"""
Distributed Cache with In-Memory Fallback

Architecture:
    DistributedCache (Public API, one per namespace)
        ├── CacheStrategy (broker-or-memory routing)
        │   ├── MemoryStorage (Per-namespace TTL map)
        │   └── BrokerStorage (Broker keys "<namespace>:<key>")
        └── CacheObserver (Metrics & logging)

Rules:
    - Reads and writes go to the broker while it is ready, otherwise to
      the in-memory map of this process.
    - Deletes and clears always apply to the memory map as well, so values
      written during an outage never outlive an invalidation.
    - When the broker returns, memory values are never pushed back.
    - Every operation is best-effort: failures are logged, never raised.

Author: Platform Engineering
Date: 2026-03-05
"""

import asyncio
import time
from typing import Any, Literal

import orjson

from engagement_backbone.core.exceptions import BrokerError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient
from engagement_backbone.infrastructure.monitoring.metrics import get_metrics_collector

logger = get_logger(__name__)

Backing = Literal["broker", "memory"]


# =============================================================================
# LAYER 1: STORAGE IMPLEMENTATIONS
# =============================================================================


class MemoryStorage:
    """
    In-memory TTL map.

    Responsibility: Per-process shadow store used while the broker is down
    (or always, on single-instance deployments).

    STAGE-2.1: Memory store

    Entries expire lazily on read and are swept on write.
    """

    def __init__(self):
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            now = time.monotonic()
            self._entries[key] = (value, now + ttl)
            self._sweep(now)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]

    def size(self) -> int:
        return len(self._entries)


class BrokerStorage:
    """
    Broker-backed storage for one namespace.

    STAGE-2.2: Broker store

    Keys are "<namespace>:<key>"; values are JSON (orjson).
    """

    def __init__(self, namespace: str, broker: BrokerClient, scan_count: int = 500):
        self._namespace = namespace
        self._broker = broker
        self._scan_count = scan_count

    def full_key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    @property
    def available(self) -> bool:
        return self._broker.is_ready

    async def get(self, key: str) -> Any:
        raw = await self._broker.commands.get(self.full_key(key))
        return orjson.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self._broker.commands.set(self.full_key(key), orjson.dumps(value).decode("utf-8"), ex=ttl)

    async def delete(self, key: str) -> bool:
        return await self._broker.commands.delete(self.full_key(key)) > 0

    async def clear(self) -> int:
        """Delete every key of the namespace, one SCAN page at a time."""
        deleted = 0
        async for keys in self._broker.commands.scan_iter(f"{self._namespace}:*", count=self._scan_count):
            deleted += await self._broker.commands.delete(*keys)
        return deleted


# =============================================================================
# LAYER 2: CACHE STRATEGY
# =============================================================================


class CacheStrategy:
    """
    Routes operations between the broker and the memory map.

    Responsibility: Decide the backing for each call and keep invalidations
    coherent across both stores.
    """

    def __init__(self, memory: MemoryStorage, broker: BrokerStorage | None):
        self._memory = memory
        self._broker = broker

    def backing(self) -> Backing:
        if self._broker is not None and self._broker.available:
            return "broker"
        return "memory"

    async def get(self, key: str) -> tuple[Any, Backing]:
        if self.backing() == "broker":
            return await self._broker.get(key), "broker"
        return await self._memory.get(key), "memory"

    async def set(self, key: str, value: Any, ttl: int) -> Backing:
        if self.backing() == "broker":
            await self._broker.set(key, value, ttl)
            await self._memory.delete(key)
            return "broker"
        await self._memory.set(key, value, ttl)
        return "memory"

    async def delete(self, key: str) -> bool:
        removed = await self._memory.delete(key)
        if self.backing() == "broker":
            removed = await self._broker.delete(key) or removed
        return removed

    async def clear(self) -> int:
        cleared = await self._memory.clear()
        if self.backing() == "broker":
            cleared += await self._broker.clear()
        return cleared

    async def fallback_get(self, key: str) -> Any:
        return await self._memory.get(key)

    async def fallback_set(self, key: str, value: Any, ttl: int) -> None:
        await self._memory.set(key, value, ttl)

    def memory_size(self) -> int:
        return self._memory.size()


# =============================================================================
# LAYER 3: OBSERVABILITY
# =============================================================================


class CacheObserver:
    """Metrics and logging for one namespace."""

    def __init__(self, namespace: str):
        self._namespace = namespace
        self._metrics = get_metrics_collector()
        self.hits = 0
        self.misses = 0
        self.errors = 0

    def on_get(self, value: Any, backing: Backing) -> None:
        if value is None:
            self.misses += 1
            self._metrics.record_cache_miss(self._namespace)
        else:
            self.hits += 1
            self._metrics.record_cache_hit(self._namespace, backing)
        if backing == "memory":
            self._metrics.record_cache_fallback(self._namespace)

    def on_error(self, operation: str, key: str | None, error: Exception) -> None:
        self.errors += 1
        logger.warning(
            "Cache operation failed, degrading to memory",
            stage="2.E",
            namespace=self._namespace,
            operation=operation,
            key=key,
            error=str(error),
        )


# =============================================================================
# PUBLIC API
# =============================================================================


class DistributedCache:
    """
    Keyed, TTL-bounded store for one namespace.

    Usage:
        cache = DistributedCache("leaderboard", broker, default_ttl=300)
        await cache.set("all_time:50", rows)
        rows = await cache.get("all_time:50")   # None on miss
        await cache.delete("all_time:50")
        await cache.clear()
    """

    def __init__(
        self,
        name: str,
        broker: BrokerClient | None,
        default_ttl: int,
        single_instance: bool = False,
        scan_count: int = 500,
    ):
        self.name = name
        self.default_ttl = default_ttl
        broker_storage = None
        if broker is not None and not single_instance:
            broker_storage = BrokerStorage(name, broker, scan_count=scan_count)
        self._strategy = CacheStrategy(MemoryStorage(), broker_storage)
        self._observer = CacheObserver(name)

    @property
    def backing(self) -> Backing:
        return self._strategy.backing()

    async def get(self, key: str) -> Any:
        """
        Get a value; None on miss or failure.

        STAGE-2.3: Cache read
        """
        try:
            value, backing = await self._strategy.get(key)
        except BrokerError as e:
            self._observer.on_error("get", key, e)
            value, backing = await self._strategy.fallback_get(key), "memory"
        self._observer.on_get(value, backing)
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Store a value for ttl seconds (namespace default when omitted).

        STAGE-2.4: Cache write
        """
        ttl = ttl or self.default_ttl
        try:
            await self._strategy.set(key, value, ttl)
        except BrokerError as e:
            self._observer.on_error("set", key, e)
            await self._strategy.fallback_set(key, value, ttl)
        return True

    async def delete(self, key: str) -> bool:
        """
        Remove one key from both stores.

        STAGE-2.5: Cache invalidation
        """
        try:
            return await self._strategy.delete(key)
        except BrokerError as e:
            self._observer.on_error("delete", key, e)
            return False

    async def clear(self) -> int:
        """Remove every key of the namespace."""
        try:
            cleared = await self._strategy.clear()
        except BrokerError as e:
            self._observer.on_error("clear", None, e)
            return 0
        logger.info("Cache namespace cleared", stage="2.5", namespace=self.name, keys=cleared)
        return cleared

    def stats(self) -> dict[str, Any]:
        return {
            "namespace": self.name,
            "backing": self.backing,
            "default_ttl": self.default_ttl,
            "memory_entries": self._strategy.memory_size(),
            "hits": self._observer.hits,
            "misses": self._observer.misses,
            "errors": self._observer.errors,
        }
