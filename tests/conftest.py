"""
Pytest Configuration and Shared Fixtures

Provides:
- An in-memory broker stand-in (key/value, hashes, pub/sub log, scan)
  whose scripting entry points are mocks tests program per case
- A connected BrokerClient over fakeredis (Lua enabled) for tests that run
  the real queue scripts; USE_REAL_BROKER=1 points it at a live broker
- A real SQLite (aiosqlite) Database with every table created
- Settings tuned for fast tests (no chunk delays, tiny fallback backoff)

Environment is pinned before any application import so that the global
settings singleton never points at a real broker.
"""

import fnmatch
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

os.environ["DEPLOYMENT_MODE"] = "development"
os.environ["BROKER_URL_DEV"] = ""
os.environ.setdefault("LOG_FORMAT", "console")

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from engagement_backbone.config.settings import Settings
from engagement_backbone.core.exceptions import DbTransientError
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient, BrokerState
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.infrastructure.database.models import User, utcnow


# ============================================================================
# Broker stand-in
# ============================================================================

class InMemoryCommands:
    """
    Dict-backed replacement for BrokerClient.commands.

    Plain key/value, hash and publish commands behave like the broker.
    run, run_script and script are mocks: every queue transition is a Lua
    script in production, so tests program the replies they need.
    """

    def __init__(self):
        self.data: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.run_script = AsyncMock(return_value=None)
        self.run = AsyncMock(return_value=None)
        self.script = MagicMock()

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None, px: int | None = None) -> bool:
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        elif px is not None:
            self.ttls[key] = px // 1000
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            if self.hashes.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        return key in self.data or key in self.hashes

    async def expire(self, key: str, seconds: int) -> bool:
        if key not in self.data and key not in self.hashes:
            return False
        self.ttls[key] = seconds
        return True

    async def scan_iter(self, match: str, count: int = 1000):
        keys = [k for k in list(self.data) + list(self.hashes) if fnmatch.fnmatchcase(k, match)]
        for start in range(0, len(keys), count):
            yield keys[start:start + count]

    async def hset(self, name: str, mapping: dict[str, Any]) -> int:
        target = self.hashes.setdefault(name, {})
        added = sum(1 for field in mapping if field not in target)
        target.update({field: str(value) for field, value in mapping.items()})
        return added

    async def hgetall(self, name: str) -> dict[str, str]:
        return dict(self.hashes.get(name, {}))

    async def hincrby(self, name: str, field: str, amount: int = 1) -> int:
        target = self.hashes.setdefault(name, {})
        value = int(target.get(field, 0)) + amount
        target[field] = str(value)
        return value

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def flushdb(self) -> bool:
        self.data.clear()
        self.hashes.clear()
        self.ttls.clear()
        return True


class InMemoryBroker:
    """Minimal BrokerClient surface used by queues, caches and workers."""

    def __init__(self, ready: bool = True, name: str = "primary", commands: InMemoryCommands | None = None):
        self.name = name
        self.ready = ready
        self.commands = commands or InMemoryCommands()
        self.duplicates: list["InMemoryBroker"] = []
        self.disconnected = False

    @property
    def is_ready(self) -> bool:
        return self.ready

    @property
    def is_configured(self) -> bool:
        return True

    @property
    def state(self) -> BrokerState:
        return BrokerState.READY if self.ready else BrokerState.DISCONNECTED

    async def health_check(self) -> dict[str, Any]:
        return {
            "status": "healthy" if self.ready else "unhealthy",
            "state": self.state.value,
            "latency_ms": 0.5 if self.ready else None,
        }

    async def duplicate(self, name: str, **kwargs) -> "InMemoryBroker":
        child = InMemoryBroker(ready=self.ready, name=name, commands=self.commands)
        child.duplicate_kwargs = kwargs
        self.duplicates.append(child)
        return child

    async def wait_until_ready(self, timeout: float) -> bool:
        return self.ready

    def add_state_listener(self, listener) -> None:
        pass

    def remove_state_listener(self, listener) -> None:
        pass

    async def disconnect(self) -> None:
        self.ready = False
        self.disconnected = True


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings with delays and backoffs shrunk to keep tests fast."""
    return Settings(
        DEPLOYMENT_MODE="development",
        BROKER_URL_DEV=None,
        QUEUE_BULK_CHUNK_DELAY_MS=0,
        QUEUE_FALLBACK_BASE_MS=1,
        QUEUE_FALLBACK_MAX_MS=2,
        QUEUE_FALLBACK_MAX_ATTEMPTS=2,
        QUEUE_STATS_TIMEOUT=1.0,
        CATALOG_PAGE_DELAY_MS=0,
        EXTERNAL_CATALOG_TOKEN="test-token",
        EXTERNAL_CATALOG_URL="https://catalog.test/admin/api/2024-01",
        WORKER_READY_TIMEOUT=0.1,
        LOG_FORMAT="console",
    )


@pytest.fixture
def broker():
    """Ready in-memory broker."""
    return InMemoryBroker()


@pytest.fixture
def offline_broker():
    """Broker that never becomes ready."""
    return InMemoryBroker(ready=False)


@pytest.fixture(scope="session")
def use_real_broker():
    """Run script-executing tests against a real broker (USE_REAL_BROKER=1)."""
    return os.getenv("USE_REAL_BROKER", "0").lower() in ("1", "true", "yes")


@pytest.fixture
async def script_broker(settings, use_real_broker):
    """
    Connected BrokerClient whose commands run the real queue scripts.

    Backed by fakeredis with Lua support unless USE_REAL_BROKER is set, in
    which case BROKER_TEST_URL (default db 15 on localhost) is flushed
    before and after the test.
    """
    url = os.getenv("BROKER_TEST_URL", "redis://localhost:6379/15")
    client = BrokerClient(url=url, settings=settings, name="scripts")
    if not use_real_broker:
        client._connection._client = fakeredis.FakeAsyncRedis(decode_responses=True)
    await client.connect()
    if not client.is_ready:
        pytest.skip(f"Broker at {url} not reachable")
    await client.commands.flushdb()
    yield client
    await client.commands.flushdb()
    await client.disconnect()


@pytest.fixture
def metrics():
    return MagicMock()


@pytest.fixture
async def database():
    """
    SQLite database shared by every session of one test.

    StaticPool keeps the single in-memory connection alive across sessions.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    db = Database(engine, transient_retry_ms=1)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def user_factory(database):
    """Insert a user and return its id."""

    async def _create(
        external_id: str = "1001",
        email: str | None = None,
        active: bool = True,
        import_status: str = "pending",
        registered_days_ago: int = 60,
        **fields,
    ) -> int:
        async with database.session() as session:
            user = User(
                external_id=external_id,
                email=email or f"user{external_id}@example.com",
                active=active,
                import_status=import_status,
                created_at=utcnow() - timedelta(days=registered_days_ago),
                **fields,
            )
            session.add(user)
            await session.flush()
            return user.id

    return _create


@pytest.fixture
def db_add(database):
    """Insert arbitrary model rows in one committed session."""

    async def _add(*rows) -> None:
        async with database.session() as session:
            session.add_all(rows)

    return _add


@pytest.fixture
def fail_worker_commits(database):
    """
    Make chosen worker_session() calls (1-based) fail at commit.

    The session body runs, then DbTransientError is raised and the real
    session rolls back, as it does when a connection drops mid-commit.
    Returns the call numbers seen so far.
    """

    def _arm(*failing: int) -> list[int]:
        real = database.worker_session
        calls: list[int] = []

        @asynccontextmanager
        async def worker_session():
            calls.append(len(calls) + 1)
            number = calls[-1]
            async with real() as session:
                yield session
                if number in failing:
                    raise DbTransientError("connection reset during commit")

        database.worker_session = worker_session
        return calls

    return _arm


@pytest.fixture(autouse=True)
def reset_http_rate_limits():
    """Clear slowapi counters so route tests never trip the admin tier."""
    from engagement_backbone.rate_limiting.rate_limiter import get_rate_limit_manager

    get_rate_limit_manager().limiter.reset()
    yield
