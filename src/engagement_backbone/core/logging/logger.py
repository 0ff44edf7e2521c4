#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides structured logging with:
- Correlation ID propagation (request id or job id) through a context variable
- Stage tags on every event for execution flow
- JSON formatting for log aggregation
- Automatic redaction of e-mail addresses and bearer tokens

Author: Platform Engineering
Date: 2026-03-02
"""

import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, WrappedLogger

# Context variable for correlation ID (task-local storage)
correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_EMAIL_PATTERN = re.compile(r"\b[\w.+-]+@[\w.-]+\.\w+\b")
_BEARER_PATTERN = re.compile(r"\bBearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_CATALOG_TOKEN_PATTERN = re.compile(r"\bshpat_[a-zA-Z0-9]+\b")


def add_correlation_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add correlation ID to log event from context variable.

    STAGE-L.1: Correlation ID injection
    """
    correlation_id = correlation_id_ctx.get()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def redact_pii(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact PII and secrets from log messages.

    STAGE-L.3: PII redaction

    Patterns redacted:
    - Email addresses → [EMAIL]
    - Bearer tokens and catalog access tokens → [REDACTED]
    """
    message = event_dict.get("event", "")

    if isinstance(message, str):
        message = _EMAIL_PATTERN.sub("[EMAIL]", message)
        message = _BEARER_PATTERN.sub("Bearer [REDACTED]", message)
        message = _CATALOG_TOKEN_PATTERN.sub("[REDACTED]", message)
        event_dict["event"] = message

    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Upper-case the level name.

    STAGE-L.4: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
    """
    if log_level is None or log_format is None:
        from engagement_backbone.config.settings import get_settings

        settings = get_settings()
        log_level = log_level or settings.logging.LOG_LEVEL
        log_format = log_format or settings.logging.LOG_FORMAT

    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            add_timestamp,
            structlog.stdlib.add_log_level,
            add_log_level_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_pii,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Job completed", stage="WORKER.COMPLETE", job_id=job.id)
    """
    return structlog.get_logger(name)


def set_correlation_id(correlation_id: str) -> None:
    """Bind a correlation ID (request id or job id) to the current task."""
    correlation_id_ctx.set(correlation_id)


def get_correlation_id() -> str | None:
    return correlation_id_ctx.get()


def clear_correlation_id() -> None:
    correlation_id_ctx.set(None)


def log_stage(
    logger: structlog.stdlib.BoundLogger, stage: str, message: str, level: str = "info", **kwargs
) -> None:
    """
    Log a message with stage information.

    Usage:
        log_stage(logger, "QUEUE.ENQUEUE_BULK", "Chunk enqueued", chunk=3, size=50)
    """
    log_func = getattr(logger, level.lower())
    log_func(message, stage=stage, **kwargs)
