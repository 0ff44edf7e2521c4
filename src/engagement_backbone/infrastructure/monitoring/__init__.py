"""
Monitoring Module

Provides Prometheus metrics collection.
"""

from .metrics import MetricsCollector, MetricsSink, get_metrics_collector

__all__ = [
    "MetricsCollector",
    "MetricsSink",
    "get_metrics_collector",
]
