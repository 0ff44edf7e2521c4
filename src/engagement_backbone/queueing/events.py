"""
Worker Events

A small typed event channel per worker. Subscribers are plain async
callables receiving a WorkerEvent: the metrics sink, broadcast sinks built by
the pipelines, and the retention hook.

A subscriber that raises is logged and skipped; it never fails the job.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from engagement_backbone.config.constants import JobState
from engagement_backbone.core.exceptions import BrokerError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.broker.broadcast import Broadcaster
from engagement_backbone.queueing.job import Job

logger = get_logger(__name__)

EventKind = Literal["active", "completed", "failed", "error", "paused", "resumed"]
EventHandler = Callable[["WorkerEvent"], Awaitable[None]]


@dataclass
class WorkerEvent:
    kind: EventKind
    queue: str
    job: Job | None = None
    duration_seconds: float | None = None
    final: bool = False
    error: BaseException | None = None
    result: Any = None
    extra: dict[str, Any] = field(default_factory=dict)


class WorkerEventBus:
    """Fan-out of worker events to subscribers, in subscription order."""

    def __init__(self, queue: str):
        self.queue = queue
        self._handlers: list[tuple[EventHandler, frozenset[str] | None]] = []

    def subscribe(self, handler: EventHandler, kinds: Iterable[str] | None = None) -> None:
        self._handlers.append((handler, frozenset(kinds) if kinds is not None else None))

    def unsubscribe(self, handler: EventHandler) -> None:
        self._handlers = [(h, k) for h, k in self._handlers if h is not handler]

    async def emit(self, event: WorkerEvent) -> None:
        for handler, kinds in list(self._handlers):
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                await handler(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Worker event handler failed",
                    stage="WORKER.EVENT",
                    queue=self.queue,
                    event_kind=event.kind,
                    handler=getattr(handler, "__name__", type(handler).__name__),
                    error=str(e),
                )


class RetentionHook:
    """
    Trims finished jobs after each completion or final failure.

    Retention is cooperative: the queue never trims on its own.
    """

    def __init__(self, queue):
        self._queue = queue

    async def __call__(self, event: WorkerEvent) -> None:
        if event.kind == "completed":
            state = JobState.COMPLETED
        elif event.kind == "failed" and event.final:
            state = JobState.FAILED
        else:
            return
        try:
            removed = await self._queue.apply_retention(state)
        except BrokerError as e:
            logger.warning("Retention trim failed", stage="WORKER.RETENTION", queue=event.queue, error=str(e))
            return
        if removed:
            logger.debug("Retention trimmed jobs", stage="WORKER.RETENTION", queue=event.queue, removed=removed)


class BroadcastSink:
    """
    Publishes a payload built from each event on a broadcast channel.

    The builder returns None to skip an event.
    """

    def __init__(
        self,
        broadcaster: Broadcaster,
        channel: str,
        build: Callable[[WorkerEvent], Awaitable[dict[str, Any] | None]],
    ):
        self._broadcaster = broadcaster
        self._channel = channel
        self._build = build

    async def __call__(self, event: WorkerEvent) -> None:
        payload = await self._build(event)
        if payload is not None:
            await self._broadcaster.publish(self._channel, f"job_{event.kind}", payload)
