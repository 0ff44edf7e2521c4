"""
Rate Limiter

Two surfaces share one key space under the broker:

- SlidingWindowRateLimiter: check(key, max, window_ms) over a broker sorted
  set (one Lua round-trip), used by workers as their throughput ceiling and
  by handlers that need an explicit decision. Falls back to per-process
  counters when the broker is unavailable; such decisions are advisory.
- RateLimitManager: slowapi moving-window tiers (auth, api, ranking, admin)
  for HTTP admission, stored in the broker with in-memory fallback.
"""

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.exceptions import BrokerError, ConfigurationError
from engagement_backbone.core.logging import get_logger
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient
from engagement_backbone.infrastructure.monitoring.metrics import get_metrics_collector

logger = get_logger(__name__)

LOCAL_SWEEP_INTERVAL_MS = 60_000

SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end
redis.call('PEXPIRE', key, window)

local reset_at = now + window
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  reset_at = tonumber(oldest[2]) + window
end
return {allowed, limit - count, reset_at}
"""


@dataclass(frozen=True)
class RateLimitDecision:
    """
    Result of one check.

    advisory is True when the decision came from per-process counters
    (broker unavailable) and so carries no cross-instance guarantee.
    """

    allowed: bool
    remaining: int
    reset_at: int
    advisory: bool = False

    @property
    def retry_after_ms(self) -> int:
        return max(0, self.reset_at - int(time.time() * 1000))


class LocalRateLimitCache:
    """
    Per-process sliding window counters.

    Used while the broker is down. Same key space as the broker path, but
    no coordination between instances. A key whose window has emptied is
    dropped, on its next check or by the periodic sweep.
    """

    def __init__(self):
        self._windows: dict[str, deque[int]] = {}
        self._expires_at: dict[str, int] = {}
        self._next_sweep_ms = 0
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def _drop(self, key: str) -> None:
        self._windows.pop(key, None)
        self._expires_at.pop(key, None)

    def _sweep(self, now_ms: int) -> None:
        for key in [k for k, expires_at in self._expires_at.items() if expires_at <= now_ms]:
            self._drop(key)
        self._next_sweep_ms = now_ms + LOCAL_SWEEP_INTERVAL_MS

    async def check_and_increment(self, key: str, limit: int, window_ms: int, now_ms: int) -> RateLimitDecision:
        async with self._lock:
            if now_ms >= self._next_sweep_ms:
                self._sweep(now_ms)

            window = self._windows.get(key) or deque()
            while window and window[0] <= now_ms - window_ms:
                window.popleft()

            allowed = len(window) < limit
            if allowed:
                window.append(now_ms)

            if window:
                self._windows[key] = window
                self._expires_at[key] = window[-1] + window_ms
            else:
                self._drop(key)

            reset_at = (window[0] + window_ms) if window else now_ms + window_ms
            return RateLimitDecision(
                allowed=allowed,
                remaining=max(0, limit - len(window)),
                reset_at=reset_at,
                advisory=True,
            )

    async def clear(self) -> None:
        async with self._lock:
            self._windows.clear()
            self._expires_at.clear()


class SlidingWindowRateLimiter:
    """
    Sliding-window counter per key, backed by the broker.

    Usage:
        limiter = SlidingWindowRateLimiter(broker)
        decision = await limiter.check("worker:bulk-import", 5, 1000)
        if not decision.allowed:
            await asyncio.sleep(decision.retry_after_ms / 1000)
    """

    def __init__(self, broker: BrokerClient | None, key_prefix: str | None = None):
        self._broker = broker
        self._prefix = key_prefix or get_settings().rate_limit.RATE_LIMIT_KEY_PREFIX
        self._local = LocalRateLimitCache()
        self._metrics = get_metrics_collector()

    @property
    def local_cache(self) -> LocalRateLimitCache:
        return self._local

    async def check(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        """
        Count one hit against key and decide admission.

        STAGE-3.1: Sliding window check

        Args:
            key: Limiter key (prefixed with the configured key prefix)
            limit: Maximum hits per window
            window_ms: Window length in milliseconds

        Returns:
            RateLimitDecision (advisory when served by the local fallback)
        """
        now_ms = int(time.time() * 1000)
        full_key = f"{self._prefix}:{key}"

        decision = None
        if self._broker is not None and self._broker.is_ready:
            try:
                allowed, remaining, reset_at = await self._broker.commands.run_script(
                    SLIDING_WINDOW_SCRIPT,
                    keys=[full_key],
                    args=[now_ms, window_ms, limit, f"{now_ms}-{uuid.uuid4().hex[:8]}"],
                    stage="RATE.CHECK",
                )
                decision = RateLimitDecision(
                    allowed=bool(int(allowed)),
                    remaining=max(0, int(remaining)),
                    reset_at=int(reset_at),
                )
            except BrokerError as e:
                logger.warning(
                    "Rate limiter falling back to local counters",
                    stage="3.1",
                    key=full_key,
                    error=str(e),
                )

        if decision is None:
            decision = await self._local.check_and_increment(full_key, limit, window_ms, now_ms)

        if not decision.allowed:
            self._metrics.record_rate_limit_rejected(key.split(":", 1)[0])
        return decision


# =============================================================================
# HTTP admission tiers (slowapi)
# =============================================================================


def get_client_identifier(request: Request) -> str:
    """
    Extract the caller identity.

    Priority: X-User-ID header > Authorization token hash > Remote IP
    """
    user_id = request.headers.get("X-User-ID")
    if user_id:
        return f"user:{user_id}"

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        import hashlib
        token_hash = hashlib.sha256(auth_header.encode()).hexdigest()[:16]
        return f"token:{token_hash}"

    return f"ip:{get_remote_address(request)}"


class RateLimitManager:
    """
    Manages HTTP rate limiting tiers for FastAPI.

    Tiers (moving window, broker storage, in-memory fallback):
        auth     10 per 15 minutes
        api      120 per minute
        ranking  30 per minute
        admin    20 per minute
    """

    def __init__(self, settings=None):
        self.settings = settings or get_settings()
        limits = self.settings.rate_limit
        self._prefix = limits.RATE_LIMIT_KEY_PREFIX
        self._tiers = {
            "auth": limits.RATE_LIMIT_AUTH,
            "api": limits.RATE_LIMIT_API,
            "ranking": limits.RATE_LIMIT_RANKING,
            "admin": limits.RATE_LIMIT_ADMIN,
        }

        self._limiter = Limiter(
            key_func=get_client_identifier,
            storage_uri=self._build_storage_uri(),
            strategy="moving-window",
            headers_enabled=True,
            in_memory_fallback_enabled=True,
        )

        logger.info("Rate limit manager initialized", stage="3.0", tiers=self._tiers)

    def _build_storage_uri(self) -> str:
        """Broker URL for slowapi storage, or memory when none is configured."""
        try:
            url = self.settings.broker_url()
        except ConfigurationError as e:
            logger.warning("Rate limiter using memory storage", stage="3.0", error=str(e))
            url = None
        return url or "memory://"

    @property
    def limiter(self) -> Limiter:
        return self._limiter

    @property
    def tiers(self) -> dict[str, str]:
        return dict(self._tiers)

    def setup_app(self, app) -> None:
        """Configure rate limiting for a FastAPI application."""
        app.state.limiter = self._limiter
        app.add_exception_handler(RateLimitExceeded, self._rate_limit_handler)
        app.add_middleware(SlowAPIMiddleware)
        logger.info("Rate limiting configured for FastAPI app", stage="3.0")

    async def _rate_limit_handler(self, request: Request, exc: RateLimitExceeded) -> Response:
        """Handle rate limit exceeded: 429 with Retry-After."""
        retry_after = 60
        limit = getattr(exc, "limit", None)
        if limit is not None and getattr(limit, "limit", None) is not None:
            retry_after = int(limit.limit.get_expiry())

        logger.warning("Rate limit exceeded", stage="3.2", client=get_client_identifier(request))
        get_metrics_collector().record_rate_limit_rejected("http")

        response = JSONResponse(
            status_code=429,
            content={
                "error": "rate_limit_exceeded",
                "message": "Too many requests. Please try again later.",
                "retry_after": retry_after,
            },
        )
        response.headers["Retry-After"] = str(retry_after)
        return response

    def tier(self, name: str) -> Callable:
        """Decorator applying one named tier; keys carry "<prefix>:<tier>"."""
        return self._limiter.shared_limit(self._tiers[name], scope=f"{self._prefix}:{name}")


# Global rate limit manager
_rate_manager: RateLimitManager | None = None


def get_rate_limit_manager() -> RateLimitManager:
    """Get global rate limit manager instance."""
    global _rate_manager
    if _rate_manager is None:
        _rate_manager = RateLimitManager()
    return _rate_manager


def setup_rate_limiting(app) -> RateLimitManager:
    """Setup rate limiting for a FastAPI application."""
    manager = get_rate_limit_manager()
    manager.setup_app(app)
    return manager
