"""
Job Queue Exceptions

All exceptions related to durable job queues and their workers.

Author: Platform Engineering
Date: 2026-03-02
"""

from typing import Any

from engagement_backbone.core.exceptions.base import BackboneError


class QueueError(BackboneError):
    """Base exception for job queue errors."""
    pass


class DuplicateJobError(QueueError):
    """
    Raised when an enqueue collides with a live job carrying the same id.

    Treated as success by every caller: the work is already admitted.
    """

    def __init__(
        self,
        message: str,
        job_id: str | None = None,
        correlation_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, correlation_id=correlation_id, details=details)
        self.job_id = job_id
        if job_id is not None:
            self.details.setdefault("job_id", job_id)


class JobNotFoundError(QueueError):
    """Raised when a job id does not exist in the queue."""
    pass


class JobLockLostError(QueueError):
    """
    Raised when a worker no longer owns the lock of the job it is finishing.

    The job was reclaimed after a stall; its outcome is discarded.
    """
    pass


class WorkerStalledError(QueueError):
    """Raised for a job whose lock expired more often than allowed."""
    pass


class WorkerInitializationError(QueueError):
    """Raised when a worker cannot obtain a ready broker connection in time."""
    pass


class NonRetryableJobError(QueueError):
    """
    Explicit terminal outcome of a job.

    Workers raise this (or a subclass) to fail a job without further attempts.
    """
    pass


class ImportInProgressError(QueueError):
    """Raised when a bulk import is requested while one is already running."""
    pass
