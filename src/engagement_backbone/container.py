"""
Service Container

Builds the process-wide services once and hands them to the HTTP layer,
the CLI and the workers as explicit dependencies.

Shutdown order: workers, queues, catalog client. The broker and the
databases are owned by the caller (app lifespan or CLI command).

Author: Platform Engineering
Date: 2026-03-07
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from engagement_backbone.config.constants import (
    QUEUE_BULK_IMPORT,
    QUEUE_COIN_RECALCULATION,
    QUEUE_ENGAGEMENT_BACKFILL,
    QUEUE_USER_CLASSIFICATION,
)
from engagement_backbone.config.settings import Settings, get_settings
from engagement_backbone.core.exceptions import ConfigurationError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broadcast import Broadcaster
from engagement_backbone.infrastructure.broker.broker_client import BrokerClient
from engagement_backbone.infrastructure.cache.cache_service import CacheService
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.infrastructure.external.catalog_client import CatalogClient
from engagement_backbone.pipelines.bulk_import import BulkImportQueue, BulkImportService, build_import_worker
from engagement_backbone.pipelines.classification import ClassificationQueue, build_classification_worker
from engagement_backbone.pipelines.coin_recalculation import CoinRecalculationQueue, build_coin_worker
from engagement_backbone.pipelines.engagement_backfill import EngagementBackfillQueue, build_backfill_worker
from engagement_backbone.queueing.job_queue import JobQueue
from engagement_backbone.queueing.worker import Worker

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    broker: BrokerClient
    database: Database
    cache: CacheService
    broadcaster: Broadcaster
    catalog: CatalogClient
    imports: BulkImportQueue
    import_service: BulkImportService
    classification: ClassificationQueue
    backfill: EngagementBackfillQueue
    coins: CoinRecalculationQueue
    workers: list[Worker] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        broker: BrokerClient,
        database: Database,
        settings: Settings | None = None,
        catalog: CatalogClient | None = None,
    ) -> "ServiceContainer":
        settings = settings or get_settings()
        catalog = catalog or CatalogClient(settings)
        imports = BulkImportQueue.create(broker, database, settings)
        broadcaster = Broadcaster(broker)
        container = cls(
            settings=settings,
            broker=broker,
            database=database,
            cache=CacheService(broker, settings),
            broadcaster=broadcaster,
            catalog=catalog,
            imports=imports,
            import_service=BulkImportService(imports, database, catalog),
            classification=ClassificationQueue.create(broker, settings),
            backfill=EngagementBackfillQueue.create(broker, database, settings, broadcaster),
            coins=CoinRecalculationQueue.create(broker, settings),
        )
        logger.info("Service container built", stage="APP.1", queues=list(container.queues()))
        return container

    def queues(self) -> dict[str, JobQueue]:
        return {
            QUEUE_BULK_IMPORT: self.imports.queue,
            QUEUE_USER_CLASSIFICATION: self.classification.queue,
            QUEUE_ENGAGEMENT_BACKFILL: self.backfill.queue,
            QUEUE_COIN_RECALCULATION: self.coins.queue,
        }

    def queue(self, name: str) -> JobQueue:
        try:
            return self.queues()[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown queue: {name}", details={"queue": name, "known": list(self.queues())}
            ) from None

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    def build_workers(self) -> list[Worker]:
        if not self.workers:
            self.workers = [
                build_import_worker(
                    self.imports, self.import_service, self.classification, self.broadcaster, self.settings
                ),
                build_classification_worker(self.classification, self.database, self.cache, self.settings),
                build_backfill_worker(self.backfill, self.database, self.settings),
                build_coin_worker(self.coins, self.database, self.cache, self.broadcaster, self.settings),
            ]
        return self.workers

    async def start_workers(self) -> None:
        """
        Start one worker per pipeline.

        STAGE-APP.2: Worker startup

        Raises:
            WorkerInitializationError: A worker found no ready broker in time
        """
        for worker in self.build_workers():
            await worker.start()
        logger.info("Workers started", stage="APP.2", workers=[w.name for w in self.workers])

    async def close_workers(self, timeout: float | None = None) -> None:
        if not self.workers:
            return
        await asyncio.gather(*(worker.close(timeout) for worker in self.workers))
        logger.info("Workers closed", stage="APP.3", workers=[w.name for w in self.workers])

    def worker_status(self) -> list[dict[str, Any]]:
        return [worker.status() for worker in self.workers]

    async def close(self) -> None:
        await self.close_workers()
        for queue in self.queues().values():
            await queue.close()
        await self.catalog.close()
