"""
FastAPI Dependencies

Route handlers receive the service container (built in the app lifespan
and stored on ``app.state.container``) and the pipeline objects it holds
through these providers, never through module globals.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from engagement_backbone.config.settings import Settings, get_settings
from engagement_backbone.container import ServiceContainer
from engagement_backbone.pipelines.bulk_import import BulkImportQueue, BulkImportService
from engagement_backbone.pipelines.classification import ClassificationQueue
from engagement_backbone.pipelines.coin_recalculation import CoinRecalculationQueue
from engagement_backbone.pipelines.engagement_backfill import EngagementBackfillQueue


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service container not initialized; application startup did not complete",
        )
    return container


ContainerDep = Annotated[ServiceContainer, Depends(get_container)]


def get_import_service(container: ContainerDep) -> BulkImportService:
    return container.import_service


def get_import_queue(container: ContainerDep) -> BulkImportQueue:
    return container.imports


def get_classification_queue(container: ContainerDep) -> ClassificationQueue:
    return container.classification


def get_backfill_queue(container: ContainerDep) -> EngagementBackfillQueue:
    return container.backfill


def get_coin_queue(container: ContainerDep) -> CoinRecalculationQueue:
    return container.coins


SettingsDep = Annotated[Settings, Depends(get_settings)]
ImportServiceDep = Annotated[BulkImportService, Depends(get_import_service)]
ImportQueueDep = Annotated[BulkImportQueue, Depends(get_import_queue)]
ClassificationQueueDep = Annotated[ClassificationQueue, Depends(get_classification_queue)]
BackfillQueueDep = Annotated[EngagementBackfillQueue, Depends(get_backfill_queue)]
CoinQueueDep = Annotated[CoinRecalculationQueue, Depends(get_coin_queue)]
