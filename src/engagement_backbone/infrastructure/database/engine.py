"""
Async Database Engines

SQLAlchemy 2.0 with asyncpg. Two logical pools:

- primary: request handlers (small pool, short acquire timeout)
- worker:  background pipelines only, so worker bursts never starve handlers

Usage:
    db = await init_databases()
    async with db.worker_session() as session:
        ...
"""

import asyncio
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.exceptions import DatabaseError, DbTransientError, classify_db_error
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.core.resilience.retry import is_db_transient, retry_async
from engagement_backbone.infrastructure.database.models import Base

logger = get_logger(__name__)

T = TypeVar("T")


def _engine_kwargs(
    url: str, pool_size: int, max_overflow: int, pool_timeout: int, pool_recycle: int, echo: bool
) -> dict[str, object]:
    engine_kwargs: dict[str, object] = {"echo": echo}
    if url.startswith("sqlite"):
        # SQLite uses a static/single-connection pool; queue pool options do not apply
        return engine_kwargs
    engine_kwargs["pool_size"] = max(1, pool_size)
    engine_kwargs["max_overflow"] = max(0, max_overflow)
    engine_kwargs["pool_timeout"] = max(1, pool_timeout)
    engine_kwargs["pool_recycle"] = max(1, pool_recycle)
    engine_kwargs["pool_pre_ping"] = True
    return engine_kwargs


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


class Database:
    """
    Owns the primary and worker engines and their session factories.

    A single engine may back both pools (tests pass one SQLite URL).
    """

    def __init__(
        self,
        primary: AsyncEngine,
        worker: AsyncEngine | None = None,
        transient_retries: int = 3,
        transient_retry_ms: int = 200,
    ):
        self.primary_engine = primary
        self.transient_retries = transient_retries
        self.transient_retry_ms = transient_retry_ms
        self.worker_engine = worker or primary
        self._primary_factory = async_sessionmaker(
            bind=self.primary_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        self._worker_factory = async_sessionmaker(
            bind=self.worker_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )

    @classmethod
    def from_settings(cls, settings=None) -> "Database":
        settings = settings or get_settings()
        db = settings.database
        echo = settings.logging.LOG_LEVEL == "DEBUG"

        primary = create_async_engine(
            db.DATABASE_URL,
            **_engine_kwargs(
                db.DATABASE_URL, db.DB_POOL_SIZE, db.DB_POOL_MAX_OVERFLOW, db.DB_POOL_TIMEOUT, db.DB_POOL_RECYCLE, echo
            ),
        )
        worker_url = db.DATABASE_WORKER_URL or db.DATABASE_URL
        worker = create_async_engine(
            worker_url,
            **_engine_kwargs(
                worker_url,
                db.DB_WORKER_POOL_SIZE,
                db.DB_WORKER_POOL_MAX_OVERFLOW,
                db.DB_POOL_TIMEOUT,
                db.DB_POOL_RECYCLE,
                echo,
            ),
        )
        logger.info(
            "Database engines initialized",
            stage="DB.0",
            primary=_redact(db.DATABASE_URL),
            worker=_redact(worker_url),
            pool_size=db.DB_POOL_SIZE,
            worker_pool_size=db.DB_WORKER_POOL_SIZE,
        )
        return cls(
            primary,
            worker,
            transient_retries=db.DB_TRANSIENT_MAX_RETRIES,
            transient_retry_ms=db.DB_TRANSIENT_RETRY_MS,
        )

    @asynccontextmanager
    async def _session(self, factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
        session = factory()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise classify_db_error(e) from e
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    def session(self):
        """Session on the primary pool; commits on exit, rolls back on error."""
        return self._session(self._primary_factory)

    def worker_session(self):
        """Session on the worker pool (background pipelines only)."""
        return self._session(self._worker_factory)

    async def run_in_session(
        self,
        work: Callable[..., Awaitable[T]],
        *args: Any,
        worker: bool = True,
        stage: str = "DB.RETRY",
        **kwargs: Any,
    ) -> T:
        """
        Run ``work(session, *args, **kwargs)`` as one committed unit of work.

        STAGE-DB.3: Local retry

        A DbTransientError (reset connection, pool exhausted, failed commit)
        rolls the unit back and reruns it in a fresh session, up to
        ``transient_retries`` times. Every other error propagates on the
        first occurrence. ``work`` must be safe to rerun.
        """
        sessions = self.worker_session if worker else self.session

        async def _attempt() -> T:
            async with sessions() as session:
                return await work(session, *args, **kwargs)

        return await retry_async(
            _attempt,
            max_retries=self.transient_retries,
            initial_ms=self.transient_retry_ms,
            max_ms=self.transient_retry_ms * 8,
            retry_on=is_db_transient,
            stage=stage,
        )

    async def ping(self, engine: AsyncEngine | None = None) -> None:
        async with (engine or self.primary_engine).connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def ensure_ready(
        self,
        max_retries: int = 10,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
    ) -> None:
        """
        Ping the primary pool until it answers.

        STAGE-DB.1: Readiness

        Raises:
            DbTransientError: Store not reachable within the budget
        """
        deadline = time.monotonic() + timeout
        last_error: Exception | None = None
        for attempt in range(1, max_retries + 1):
            try:
                await self.ping()
                logger.info("Database ready", stage="DB.1", attempt=attempt)
                return
            except (SQLAlchemyError, OSError) as e:
                last_error = e
                logger.warning("Database not ready", stage="DB.1", attempt=attempt, error=str(e))
            if time.monotonic() + retry_delay > deadline:
                break
            await asyncio.sleep(retry_delay)

        raise DbTransientError(
            "Database not reachable",
            details={"attempts": max_retries, "error": str(last_error) if last_error else None},
        )

    async def create_all(self) -> None:
        """Create missing tables (development and tests; production uses migrations)."""
        async with self.primary_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.primary_engine.dispose()
        if self.worker_engine is not self.primary_engine:
            await self.worker_engine.dispose()
        logger.info("Database engines closed", stage="DB.2")


# =============================================================================
# GLOBAL INSTANCE (SINGLETON PATTERN)
# =============================================================================

_database: Database | None = None


def get_database() -> Database:
    if _database is None:
        raise DatabaseError("Database not initialized. Call init_databases() first.")
    return _database


async def init_databases(settings=None) -> Database:
    """Create both engines and wait for the primary to answer."""
    global _database
    settings = settings or get_settings()
    if _database is None:
        _database = Database.from_settings(settings)
    db_settings = settings.database
    await _database.ensure_ready(
        max_retries=db_settings.DB_READY_MAX_RETRIES,
        retry_delay=db_settings.DB_READY_RETRY_DELAY,
        timeout=db_settings.DB_READY_TIMEOUT,
    )
    return _database


async def close_databases() -> None:
    global _database
    if _database is not None:
        await _database.dispose()
        _database = None
