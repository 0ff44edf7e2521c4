"""
Admin Routes

Operational endpoints wrapping the pipeline entry points under
``/api/admin``. Every endpoint is in the ``admin`` rate-limit tier.

Errors raised by the pipelines are BackboneError subclasses; the app-level
exception handlers map them to JSON bodies (409 import in progress, 503
broker/database unavailable, 500 otherwise).
"""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Query, Request, Response, status

from engagement_backbone.api.dependencies import (
    BackfillQueueDep,
    ClassificationQueueDep,
    CoinQueueDep,
    ContainerDep,
    ImportQueueDep,
    ImportServiceDep,
)
from engagement_backbone.api.models import (
    ClassificationEnqueueRequest,
    ClearResponse,
    CoinRecalculationRequest,
    EnqueueResponse,
    ObliterateStartedResponse,
    QueueCleanResponse,
    RetryFailedEnqueuesRequest,
    StartImportRequest,
)
from engagement_backbone.config.constants import QUEUE_MONITOR_CHANNEL
from engagement_backbone.core.exceptions import BrokerError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broadcast import Broadcaster
from engagement_backbone.queueing.job_queue import JobQueue
from engagement_backbone.rate_limiting.rate_limiter import get_rate_limit_manager

logger = get_logger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])
admin_limit = get_rate_limit_manager().tier("admin")

OBLITERATE_PROGRESS_EVENT = "obliterate_progress"


async def run_obliterate(queue: JobQueue, broadcaster: Broadcaster) -> dict[str, Any] | None:
    """
    Obliterate a queue, publishing each progress report.

    STAGE-API.OBLITERATE: Background obliterate
    """

    async def _publish(progress: dict[str, Any]) -> None:
        await broadcaster.publish(QUEUE_MONITOR_CHANNEL, OBLITERATE_PROGRESS_EVENT, {"queue": queue.name, **progress})

    try:
        return await queue.obliterate_with_progress(_publish)
    except BrokerError as e:
        logger.error("Queue obliterate failed", stage="API.OBLITERATE", queue=queue.name, error=str(e))
        await _publish({"phase": "failed", "error": str(e)})
        return None


# =============================================================================
# Bulk import
# =============================================================================


@router.get("/bulk-import/catalog-stats")
@admin_limit
async def catalog_stats(
    request: Request,
    response: Response,
    service: ImportServiceDep,
    bypass_cache: bool = Query(default=False),
):
    return await service.get_catalog_stats(bypass_cache=bypass_cache)


@router.get("/bulk-import/progress")
@admin_limit
async def import_progress(request: Request, response: Response, service: ImportServiceDep):
    return await service.get_progress()


@router.get("/bulk-import/users-without-history")
@admin_limit
async def users_without_history(
    request: Request,
    response: Response,
    service: ImportServiceDep,
    limit: int = Query(default=100, ge=1, le=1000),
):
    users = await service.get_users_without_history(limit=limit)
    return {"count": len(users), "users": users}


@router.post("/bulk-import/start")
@admin_limit
async def start_import(
    request: Request, response: Response, body: StartImportRequest, service: ImportServiceDep
):
    """
    Run one import scan.

    Returns the final import stats. 409 while another run is active.
    """
    return await service.start_bulk_import(body.to_options())


@router.post("/bulk-import/resume")
@admin_limit
async def resume_import(request: Request, response: Response, service: ImportServiceDep):
    return await service.resume_import()


@router.get("/bulk-import/queue/stats")
@admin_limit
async def import_queue_stats(request: Request, response: Response, imports: ImportQueueDep):
    return await imports.stats()


@router.get("/bulk-import/queue/recent-jobs")
@admin_limit
async def import_recent_jobs(
    request: Request,
    response: Response,
    imports: ImportQueueDep,
    limit: int = Query(default=10, ge=1, le=100),
):
    return {"jobs": await imports.get_recent_jobs(limit=limit)}


@router.post("/bulk-import/queue/clean", response_model=QueueCleanResponse)
@admin_limit
async def import_queue_clean(request: Request, response: Response, imports: ImportQueueDep):
    return await imports.clean()


@router.post(
    "/bulk-import/queue/obliterate",
    response_model=ObliterateStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@admin_limit
async def import_queue_obliterate(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    container: ContainerDep,
):
    """Start deleting every key of the import queue; progress is broadcast."""
    queue = container.imports.queue
    background_tasks.add_task(run_obliterate, queue, container.broadcaster)
    logger.info("Queue obliterate scheduled", stage="API.OBLITERATE", queue=queue.name)
    return ObliterateStartedResponse(queue=queue.name, channel=QUEUE_MONITOR_CHANNEL)


@router.post("/bulk-import/queue/clear-completed", response_model=ClearResponse)
@admin_limit
async def import_queue_clear_completed(request: Request, response: Response, imports: ImportQueueDep):
    return ClearResponse(removed=await imports.queue.clear_completed())


@router.post("/bulk-import/queue/clear-failed", response_model=ClearResponse)
@admin_limit
async def import_queue_clear_failed(request: Request, response: Response, imports: ImportQueueDep):
    return ClearResponse(removed=await imports.queue.clear_failed())


@router.post("/bulk-import/retry-failed-enqueues")
@admin_limit
async def retry_failed_enqueues(
    request: Request,
    response: Response,
    imports: ImportQueueDep,
    body: RetryFailedEnqueuesRequest | None = None,
):
    limit = body.limit if body is not None else RetryFailedEnqueuesRequest().limit
    return await imports.retry_failed_enqueues(limit=limit)


# =============================================================================
# Engagement backfill
# =============================================================================


@router.post("/engagement/backfill/start")
@admin_limit
async def start_backfill(request: Request, response: Response, backfill: BackfillQueueDep):
    return await backfill.start_backfill()


@router.get("/engagement/backfill/progress")
@admin_limit
async def backfill_progress(request: Request, response: Response, backfill: BackfillQueueDep):
    return await backfill.get_progress()


@router.post("/engagement/backfill/clean", response_model=QueueCleanResponse)
@admin_limit
async def backfill_clean(request: Request, response: Response, backfill: BackfillQueueDep):
    return await backfill.clean()


# =============================================================================
# Classification and coins
# =============================================================================


@router.post("/classification/enqueue", response_model=EnqueueResponse)
@admin_limit
async def enqueue_classification(
    request: Request,
    response: Response,
    body: ClassificationEnqueueRequest,
    classification: ClassificationQueueDep,
):
    result = await classification.enqueue(body.user_id, reason=body.reason, force=body.force)
    if result is None:
        return EnqueueResponse(success=True, throttled=True)
    return EnqueueResponse(success=True, job_id=result.job_id, created=result.created)


@router.post("/coins/recalculate", response_model=EnqueueResponse)
@admin_limit
async def recalculate_coins(
    request: Request, response: Response, body: CoinRecalculationRequest, coins: CoinQueueDep
):
    result = await coins.enqueue(body.user_id, coin_type=body.coin_type, reason=body.reason, context=body.context)
    return EnqueueResponse(success=True, job_id=result.job_id, created=result.created)
