#!/usr/bin/env python3
"""
FastAPI Application Entry Point

Configures the admin/health HTTP surface of the engagement backbone: the
lifespan that owns broker, databases and the service container, the
request correlation middleware, exception mapping and rate limiting.

Author: Platform Engineering
Date: 2026-03-08
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from engagement_backbone.api import admin_router, health_router
from engagement_backbone.config.settings import get_settings
from engagement_backbone.container import ServiceContainer
from engagement_backbone.core.exceptions import (
    BackboneError,
    BrokerUnavailableError,
    DatabaseError,
    ImportInProgressError,
    WorkerInitializationError,
)
from engagement_backbone.core.logging.logger import (
    clear_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)
from engagement_backbone.infrastructure.broker.broker_client import close_broker, init_broker
from engagement_backbone.infrastructure.database.engine import close_databases, init_databases
from engagement_backbone.rate_limiting.rate_limiter import setup_rate_limiting

logger = get_logger(__name__)

HEADER_REQUEST_ID = "X-Request-ID"


# ============================================================================
# Application Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle (startup and shutdown).

    Startup: logging, broker, databases, service container, optional
    in-process workers. Shutdown runs in reverse.
    """
    settings = get_settings()
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    logger.info(
        "Starting engagement backbone",
        stage="APP.0",
        deployment_mode=settings.app.DEPLOYMENT_MODE,
        version=settings.app.APP_VERSION,
    )

    broker = await init_broker()
    container: ServiceContainer | None = None
    try:
        database = await init_databases(settings)
        container = ServiceContainer.build(broker, database, settings)
        app.state.container = container

        if settings.queue.RUN_WORKERS_IN_PROCESS:
            await container.start_workers()

        logger.info("Application startup complete", stage="APP.0")
        yield

    finally:
        logger.info("Shutting down application", stage="APP.3")
        if container is not None:
            await container.close()
            app.state.container = None
        await close_databases()
        await close_broker()
        logger.info("Application shutdown complete", stage="APP.3")


# ============================================================================
# Exception Handlers
# ============================================================================

def status_for(exc: BackboneError) -> int:
    if isinstance(exc, ImportInProgressError):
        return 409
    if isinstance(exc, (BrokerUnavailableError, DatabaseError, WorkerInitializationError)):
        return 503
    return 500


async def backbone_exception_handler(request: Request, exc: BackboneError) -> JSONResponse:
    """Map backbone errors onto JSON bodies carrying the request id."""
    status_code = status_for(exc)
    correlation_id = exc.correlation_id or request.headers.get(HEADER_REQUEST_ID)
    log = logger.warning if status_code < 500 else logger.error
    log(
        f"Request failed: {exc.message}",
        stage="APP.ERR",
        error_type=type(exc).__name__,
        status_code=status_code,
        path=request.url.path,
    )
    body = exc.to_dict()
    body["correlation_id"] = correlation_id
    return JSONResponse(status_code=status_code, content=body)


# ============================================================================
# Application Factory
# ============================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="Background work backbone: import, classification, backfill and coin pipelines",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        request_id = request.headers.get(HEADER_REQUEST_ID) or str(uuid.uuid4())
        set_correlation_id(request_id)
        try:
            response = await call_next(request)
            response.headers[HEADER_REQUEST_ID] = request_id
            return response
        finally:
            clear_correlation_id()

    app.add_exception_handler(BackboneError, backbone_exception_handler)

    setup_rate_limiting(app)

    app.include_router(health_router)
    app.include_router(admin_router)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": settings.app.APP_NAME,
            "version": settings.app.APP_VERSION,
            "deployment_mode": settings.app.DEPLOYMENT_MODE,
            "docs": "/docs",
            "health": "/health",
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "engagement_backbone.app:create_app",
        factory=True,
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        reload=settings.app.DEPLOYMENT_MODE == "development",
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
