"""
Health Check Routes

Liveness, readiness and Prometheus scrape endpoints.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import APIRouter, HTTPException, Response
from sqlalchemy.exc import SQLAlchemyError

from engagement_backbone.api.dependencies import ContainerDep
from engagement_backbone.api.models import HealthResponse
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.monitoring.metrics import get_metrics_collector

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_component(container) -> str:
    try:
        await container.database.ping()
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database health check failed", stage="H.1", error=str(e))
        return HealthStatus.UNHEALTHY.value
    return HealthStatus.HEALTHY.value


async def collect_health(container) -> dict[str, Any]:
    """
    Aggregate component health.

    STAGE-H.1: Component health

    The database is required; a broker that is disabled or down degrades the
    service (cache falls back to memory, queues reject admission).
    """
    broker = await container.broker.health_check()
    database = await _database_component(container)

    if database != HealthStatus.HEALTHY.value:
        status = HealthStatus.UNHEALTHY
    elif broker["status"] != HealthStatus.HEALTHY.value:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY

    return {
        "status": status.value,
        "timestamp": _timestamp(),
        "components": {
            "broker": broker,
            "database": database,
            "workers": container.worker_status(),
        },
    }


@router.get("/health", response_model=HealthResponse)
async def health_check(container: ContainerDep):
    """Component health for load balancers and operators."""
    return await collect_health(container)


@router.get("/health/live")
async def liveness():
    return {"status": "alive", "timestamp": _timestamp()}


@router.get("/health/ready")
async def readiness(container: ContainerDep):
    """503 until the database answers."""
    result = await collect_health(container)
    if result["status"] == HealthStatus.UNHEALTHY.value:
        raise HTTPException(status_code=503, detail=result)
    return {"status": "ready", "timestamp": result["timestamp"]}


@router.get("/metrics")
async def metrics():
    collector = get_metrics_collector()
    return Response(content=collector.get_prometheus_metrics(), media_type=collector.get_content_type())
