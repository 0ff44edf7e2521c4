"""
Queueing Package

Durable broker-backed job queues and the worker runtime that consumes them.
"""

from .events import BroadcastSink, RetentionHook, WorkerEvent, WorkerEventBus
from .job import (
    BackoffPolicy,
    BulkEnqueueResult,
    EnqueueResult,
    Job,
    JobOptions,
    JobSpec,
    QueueConfig,
    RateLimit,
    RetentionPolicy,
)
from .job_queue import JobQueue, now_ms
from .worker import Worker, WorkerOptions

__all__ = [
    "JobQueue",
    "now_ms",
    "Worker",
    "WorkerOptions",
    "WorkerEvent",
    "WorkerEventBus",
    "RetentionHook",
    "BroadcastSink",
    "Job",
    "JobOptions",
    "JobSpec",
    "QueueConfig",
    "BackoffPolicy",
    "RetentionPolicy",
    "RateLimit",
    "EnqueueResult",
    "BulkEnqueueResult",
]
