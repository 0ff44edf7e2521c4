"""
Failed-Enqueue Ledger

Durable record of jobs the broker refused at admission. Rows are keyed by
user id: repeated failures for the same user update the existing row. A
later successful enqueue marks the row resolved; retry_failed_enqueues()
drains unresolved rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update

from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.infrastructure.database.models import FailedEnqueueJob, utcnow

logger = get_logger(__name__)


@dataclass
class LedgerEntry:
    user_id: int
    external_id: str | None
    email: str | None
    error_message: str
    queue_name: str | None = None
    job_name: str | None = None
    job_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class PendingEnqueue:
    user_id: int
    external_id: str | None
    email: str | None
    retry_count: int
    queue_name: str | None
    job_name: str | None
    job_id: str | None
    payload: dict[str, Any] | None
    created_at: datetime


class FailedEnqueueLedger:
    """Select-then-update-or-insert upserts over failed_enqueue_jobs."""

    def __init__(self, database: Database):
        self._db = database

    async def record(self, entries: list[LedgerEntry]) -> int:
        """
        Upsert one row per entry.

        STAGE-LEDGER.1: Record admission failures

        Returns:
            Number of rows written
        """
        if not entries:
            return 0

        now = utcnow()

        async def _upsert(session) -> None:
            user_ids = [entry.user_id for entry in entries]
            existing = {
                row.user_id: row
                for row in (
                    await session.execute(select(FailedEnqueueJob).where(FailedEnqueueJob.user_id.in_(user_ids)))
                ).scalars()
            }
            for entry in entries:
                row = existing.get(entry.user_id)
                if row is None:
                    row = FailedEnqueueJob(user_id=entry.user_id, created_at=now, retry_count=0)
                    session.add(row)
                    existing[entry.user_id] = row
                row.external_id = entry.external_id
                row.email = entry.email
                row.error_message = entry.error_message
                row.queue_name = entry.queue_name
                row.job_name = entry.job_name
                row.job_id = entry.job_id
                row.payload = entry.payload
                row.last_retry_at = now
                row.resolved_at = None

        await self._db.run_in_session(_upsert, stage="LEDGER.1")
        logger.warning(
            "Jobs recorded in failed-enqueue ledger",
            stage="LEDGER.1",
            count=len(entries),
            error=entries[0].error_message,
        )
        return len(entries)

    async def resolve(self, user_ids: list[int]) -> int:
        """Mark unresolved rows of these users resolved."""
        if not user_ids:
            return 0
        async with self._db.worker_session() as session:
            result = await session.execute(
                update(FailedEnqueueJob)
                .where(FailedEnqueueJob.user_id.in_(user_ids), FailedEnqueueJob.resolved_at.is_(None))
                .values(resolved_at=utcnow())
            )
            return result.rowcount or 0

    async def bump_retry(self, user_id: int, error_message: str) -> None:
        async with self._db.worker_session() as session:
            await session.execute(
                update(FailedEnqueueJob)
                .where(FailedEnqueueJob.user_id == user_id)
                .values(
                    retry_count=FailedEnqueueJob.retry_count + 1,
                    error_message=error_message,
                    last_retry_at=utcnow(),
                )
            )

    async def pending(self, limit: int = 100, queue_name: str | None = None) -> list[PendingEnqueue]:
        """Oldest unresolved rows first."""
        stmt = select(FailedEnqueueJob).where(FailedEnqueueJob.resolved_at.is_(None))
        if queue_name is not None:
            stmt = stmt.where(
                (FailedEnqueueJob.queue_name == queue_name) | FailedEnqueueJob.queue_name.is_(None)
            )
        stmt = stmt.order_by(FailedEnqueueJob.created_at).limit(limit)
        async with self._db.worker_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [
                PendingEnqueue(
                    user_id=row.user_id,
                    external_id=row.external_id,
                    email=row.email,
                    retry_count=row.retry_count,
                    queue_name=row.queue_name,
                    job_name=row.job_name,
                    job_id=row.job_id,
                    payload=row.payload,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    async def count_unresolved(self) -> int:
        async with self._db.worker_session() as session:
            result = await session.execute(
                select(func.count()).select_from(FailedEnqueueJob).where(FailedEnqueueJob.resolved_at.is_(None))
            )
            return int(result.scalar_one())
