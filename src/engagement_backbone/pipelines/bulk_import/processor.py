"""
Bulk Import Worker

Per job ({user_id, external_id, email}):
    1. mark the user's import in_progress
    2. import the order history through PurchaseHistoryService
    3. mark the import completed (full_history_imported = true)
    4. enqueue a classification job

A failed attempt marks the user failed; the queue retries it with backoff.
Progress and catalog-gap snapshots are broadcast on the admin
queue-monitor channel from worker events.
"""

import time
from collections.abc import Callable
from typing import Any

from engagement_backbone.config.constants import QUEUE_MONITOR_CHANNEL, ImportStatus
from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.exceptions import BrokerError, DatabaseError, ExternalApi5xxError, UserNotFoundError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broadcast import Broadcaster
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.infrastructure.database.models import User, utcnow
from engagement_backbone.infrastructure.external.catalog_client import CatalogClient
from engagement_backbone.pipelines.bulk_import.queue import BulkImportQueue
from engagement_backbone.pipelines.bulk_import.service import BulkImportService
from engagement_backbone.pipelines.classification.queue import ClassificationQueue
from engagement_backbone.queueing.events import BroadcastSink, WorkerEvent
from engagement_backbone.queueing.job import Job
from engagement_backbone.queueing.worker import Worker, WorkerOptions
from engagement_backbone.services.purchase_history import PurchaseHistoryService, SyncResult

logger = get_logger(__name__)

CATALOG_STATS_EVENT = "catalog_stats_update"


class BulkImportProcessor:
    def __init__(self, database: Database, catalog: CatalogClient, classification: ClassificationQueue):
        self.database = database
        self.catalog = catalog
        self.classification = classification

    async def _set_status(self, user_id: int, status: ImportStatus) -> None:
        async def _update(session) -> None:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found", details={"user_id": user_id})
            user.import_status = status.value

        await self.database.run_in_session(_update, stage="IMP.4")

    async def _import_history(self, session, user_id: int) -> SyncResult:
        user = await session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found", details={"user_id": user_id})
        sync = await PurchaseHistoryService(session, self.catalog).sync_user_orders(user)
        if not sync.success:
            raise ExternalApi5xxError(
                f"Order sync failed: {sync.reason}", details={"user_id": user_id, "reason": sync.reason}
            )
        now = utcnow()
        user.import_status = ImportStatus.COMPLETED.value
        user.full_history_imported = True
        user.history_imported_at = now
        user.last_order_synced_at = now
        return sync

    async def __call__(self, job: Job) -> dict[str, Any]:
        """
        Import one user's order history.

        STAGE-IMP.4: Import job

        An order sync that cannot reach the catalog raises a retryable
        error; the user stays marked failed until a later attempt succeeds.
        """
        user_id = int(job.data["user_id"])
        started = time.perf_counter()

        await self._set_status(user_id, ImportStatus.IN_PROGRESS)
        sync = await self.database.run_in_session(self._import_history, user_id, stage="IMP.4")

        try:
            await self.classification.enqueue(user_id, reason="import")
        except BrokerError as e:
            logger.warning("Classification not enqueued after import", stage="IMP.4", user_id=user_id, error=str(e))

        duration_ms = round((time.perf_counter() - started) * 1000)
        logger.info(
            "User import completed",
            stage="IMP.4",
            user_id=user_id,
            items=sync.items_imported,
            orders=sync.orders_processed,
            skipped=sync.skipped,
            duration_ms=duration_ms,
        )
        return {
            "success": True,
            "user_id": user_id,
            "email": job.data.get("email"),
            "items_imported": sync.items_imported,
            "orders_processed": sync.orders_processed,
            "duration_ms": duration_ms,
        }

    async def on_failed(self, event: WorkerEvent) -> None:
        if event.job is None or "user_id" not in event.job.data:
            return
        user_id = int(event.job.data["user_id"])
        try:
            await self._set_status(user_id, ImportStatus.FAILED)
        except (DatabaseError, UserNotFoundError) as e:
            logger.warning("Could not mark import failed", stage="IMP.4", user_id=user_id, error=str(e))
            return
        logger.info("User import marked failed", stage="IMP.4", user_id=user_id, error=str(event.error))


class CatalogGapSink:
    """
    Broadcasts the catalog-gap snapshot at most once per throttle window.

    Each snapshot costs a catalog count call (cached) and local counts.
    """

    def __init__(
        self,
        service: BulkImportService,
        broadcaster: Broadcaster,
        throttle_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service = service
        self.broadcaster = broadcaster
        self.throttle_seconds = throttle_seconds
        self._clock = clock
        self._last_sent: float | None = None

    async def __call__(self, event: WorkerEvent) -> None:
        await self.broadcast()

    async def broadcast(self, force: bool = False, bypass_cache: bool = False) -> bool:
        now = self._clock()
        if not force and self._last_sent is not None and now - self._last_sent < self.throttle_seconds:
            return False
        self._last_sent = now
        stats = await self.service.get_catalog_stats(bypass_cache=bypass_cache)
        return await self.broadcaster.publish(QUEUE_MONITOR_CHANNEL, CATALOG_STATS_EVENT, stats)


def build_import_worker(
    imports: BulkImportQueue,
    service: BulkImportService,
    classification: ClassificationQueue,
    broadcaster: Broadcaster,
    settings=None,
    **overrides: Any,
) -> Worker:
    """Worker with concurrency 3 and 5 jobs/s, plus the progress broadcasts."""
    processor = BulkImportProcessor(service.database, service.catalog, classification)
    worker = Worker(
        imports.queue,
        processor,
        WorkerOptions.from_config(imports.queue.config, **overrides),
        settings=settings,
    )
    throttle = (settings or get_settings()).queue.PROGRESS_BROADCAST_THROTTLE_SECONDS

    async def _progress(event: WorkerEvent) -> dict[str, Any]:
        return await service.get_progress()

    worker.events.subscribe(processor.on_failed, kinds=("failed",))
    worker.events.subscribe(
        BroadcastSink(broadcaster, QUEUE_MONITOR_CHANNEL, _progress), kinds=("active", "completed", "failed")
    )
    worker.events.subscribe(CatalogGapSink(service, broadcaster, throttle), kinds=("completed", "failed"))
    return worker
