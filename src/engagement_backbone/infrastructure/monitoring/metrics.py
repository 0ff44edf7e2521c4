#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides metrics for the work-processing backbone:
- Jobs processed by queue and outcome, with duration histograms
- Enqueue results (created, duplicate, fallback, ledger)
- Cache hits, misses and in-memory fallbacks by namespace
- Rate-limit rejections by key family
- Broker connection state and failed-enqueue ledger size

Architectural Decision: prometheus-client for industry-standard metrics
- Scraped from GET /metrics
- Worker events feed the collector through MetricsSink

Author: Platform Engineering
Date: 2026-03-05
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# Job metrics
JOBS_PROCESSED = Counter(
    'backbone_jobs_total',
    'Jobs finished by workers',
    ['queue', 'outcome']  # completed, failed, retried
)

JOB_DURATION = Histogram(
    'backbone_job_duration_seconds',
    'Job processing duration in seconds',
    ['queue'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0, 300.0)
)

JOBS_ACTIVE = Gauge(
    'backbone_jobs_active',
    'Jobs currently being processed',
    ['queue']
)

WORKER_ERRORS = Counter(
    'backbone_worker_errors_total',
    'Worker runtime errors outside job processing',
    ['queue']
)

WORKER_PAUSED = Gauge(
    'backbone_worker_paused',
    'Worker paused state (1=paused)',
    ['queue']
)

# Enqueue metrics
ENQUEUE_RESULTS = Counter(
    'backbone_enqueue_total',
    'Enqueue outcomes',
    ['queue', 'result']  # created, duplicate, fallback, failed
)

QUEUE_DEPTH = Gauge(
    'backbone_queue_depth',
    'Jobs by queue and state',
    ['queue', 'state']
)

LEDGER_SIZE = Gauge(
    'backbone_failed_enqueue_unresolved',
    'Unresolved rows in the failed-enqueue ledger'
)

# Cache metrics
CACHE_HITS = Counter(
    'backbone_cache_hits_total',
    'Cache hits',
    ['namespace', 'backing']  # broker or memory
)

CACHE_MISSES = Counter(
    'backbone_cache_misses_total',
    'Cache misses',
    ['namespace']
)

CACHE_FALLBACKS = Counter(
    'backbone_cache_fallbacks_total',
    'Cache operations served by the in-memory store while the broker was down',
    ['namespace']
)

# Rate limiting metrics
RATE_LIMIT_REJECTED = Counter(
    'backbone_rate_limit_rejected_total',
    'Rate limit rejections',
    ['scope']
)

# Broker metrics
BROKER_STATE = Gauge(
    'backbone_broker_ready',
    'Broker connection ready (1) or not (0)',
    ['connection']
)

# App info
APP_INFO = Info(
    'backbone_app',
    'Application information'
)


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = get_metrics_collector()
        metrics.record_job("bulk-import", "completed", 0.42)
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self):
        settings = get_settings()

        APP_INFO.info({
            'version': settings.app.APP_VERSION,
            'deployment_mode': settings.app.DEPLOYMENT_MODE,
            'app_name': settings.app.APP_NAME
        })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Job Metrics
    # =========================================================================

    def record_job(self, queue: str, outcome: str, duration_seconds: float | None = None) -> None:
        """Record a finished job."""
        JOBS_PROCESSED.labels(queue=queue, outcome=outcome).inc()
        if duration_seconds is not None:
            JOB_DURATION.labels(queue=queue).observe(duration_seconds)

    def job_started(self, queue: str) -> None:
        JOBS_ACTIVE.labels(queue=queue).inc()

    def job_finished(self, queue: str) -> None:
        JOBS_ACTIVE.labels(queue=queue).dec()

    def record_worker_error(self, queue: str) -> None:
        WORKER_ERRORS.labels(queue=queue).inc()

    def set_worker_paused(self, queue: str, paused: bool) -> None:
        WORKER_PAUSED.labels(queue=queue).set(1 if paused else 0)

    # =========================================================================
    # Queue Metrics
    # =========================================================================

    def record_enqueue(self, queue: str, result: str, count: int = 1) -> None:
        """Record enqueue outcomes."""
        if count:
            ENQUEUE_RESULTS.labels(queue=queue, result=result).inc(count)

    def record_queue_depth(self, queue: str, counts: dict[str, int]) -> None:
        for state, value in counts.items():
            if isinstance(value, int):
                QUEUE_DEPTH.labels(queue=queue, state=state).set(value)

    def set_ledger_size(self, size: int) -> None:
        LEDGER_SIZE.set(size)

    # =========================================================================
    # Cache Metrics
    # =========================================================================

    def record_cache_hit(self, namespace: str, backing: str) -> None:
        CACHE_HITS.labels(namespace=namespace, backing=backing).inc()

    def record_cache_miss(self, namespace: str) -> None:
        CACHE_MISSES.labels(namespace=namespace).inc()

    def record_cache_fallback(self, namespace: str) -> None:
        CACHE_FALLBACKS.labels(namespace=namespace).inc()

    # =========================================================================
    # Rate Limiting / Broker Metrics
    # =========================================================================

    def record_rate_limit_rejected(self, scope: str) -> None:
        RATE_LIMIT_REJECTED.labels(scope=scope).inc()

    def set_broker_ready(self, connection: str, ready: bool) -> None:
        BROKER_STATE.labels(connection=connection).set(1 if ready else 0)

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """Prometheus text format output."""
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


class MetricsSink:
    """
    Worker event subscriber feeding the collector.

    Subscribed to every worker's event bus; maps active/completed/failed/error
    events onto job counters and histograms.
    """

    def __init__(self, collector: "MetricsCollector | None" = None):
        self._collector = collector or get_metrics_collector()

    async def __call__(self, event) -> None:
        queue = event.queue
        if event.kind == "active":
            self._collector.job_started(queue)
        elif event.kind == "completed":
            self._collector.job_finished(queue)
            self._collector.record_job(queue, "completed", event.duration_seconds)
        elif event.kind == "failed":
            self._collector.job_finished(queue)
            outcome = "failed" if event.final else "retried"
            self._collector.record_job(queue, outcome, event.duration_seconds)
        elif event.kind == "error":
            self._collector.record_worker_error(queue)
        elif event.kind in ("paused", "resumed"):
            self._collector.set_worker_paused(queue, event.kind == "paused")


# Global metrics collector
_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
