"""
Unit Tests for the Worker Event Bus and Built-in Subscribers
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from engagement_backbone.config.constants import JobState
from engagement_backbone.core.exceptions import BrokerUnavailableError
from engagement_backbone.queueing.events import BroadcastSink, RetentionHook, WorkerEvent, WorkerEventBus


@pytest.mark.unit
class TestWorkerEventBus:
    @pytest.mark.asyncio
    async def test_kind_filter(self):
        bus = WorkerEventBus("q")
        everything, completed_only = AsyncMock(), AsyncMock()
        bus.subscribe(everything)
        bus.subscribe(completed_only, kinds=("completed",))

        await bus.emit(WorkerEvent(kind="active", queue="q"))
        await bus.emit(WorkerEvent(kind="completed", queue="q"))

        assert everything.await_count == 2
        assert completed_only.await_count == 1

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = WorkerEventBus("q")
        after = AsyncMock()
        bus.subscribe(AsyncMock(side_effect=RuntimeError("subscriber bug")))
        bus.subscribe(after)

        await bus.emit(WorkerEvent(kind="completed", queue="q"))

        after.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = WorkerEventBus("q")
        handler = AsyncMock()
        bus.subscribe(handler)
        bus.unsubscribe(handler)

        await bus.emit(WorkerEvent(kind="completed", queue="q"))

        handler.assert_not_called()


@pytest.mark.unit
class TestRetentionHook:
    @pytest.mark.asyncio
    async def test_completed_trims_completed(self):
        queue = MagicMock(apply_retention=AsyncMock(return_value=3))
        await RetentionHook(queue)(WorkerEvent(kind="completed", queue="q"))
        queue.apply_retention.assert_awaited_once_with(JobState.COMPLETED)

    @pytest.mark.asyncio
    async def test_only_final_failures_trim(self):
        queue = MagicMock(apply_retention=AsyncMock(return_value=0))
        hook = RetentionHook(queue)

        await hook(WorkerEvent(kind="failed", queue="q", final=False))
        queue.apply_retention.assert_not_called()

        await hook(WorkerEvent(kind="failed", queue="q", final=True))
        queue.apply_retention.assert_awaited_once_with(JobState.FAILED)

    @pytest.mark.asyncio
    async def test_broker_errors_swallowed(self):
        queue = MagicMock(apply_retention=AsyncMock(side_effect=BrokerUnavailableError("down")))
        await RetentionHook(queue)(WorkerEvent(kind="completed", queue="q"))


@pytest.mark.unit
class TestBroadcastSink:
    @pytest.mark.asyncio
    async def test_publishes_built_payload(self):
        broadcaster = MagicMock(publish=AsyncMock(return_value=True))

        async def build(event):
            return {"queue": event.queue}

        await BroadcastSink(broadcaster, "admin:queue-monitor", build)(WorkerEvent(kind="completed", queue="q"))

        broadcaster.publish.assert_awaited_once_with("admin:queue-monitor", "job_completed", {"queue": "q"})

    @pytest.mark.asyncio
    async def test_none_payload_skips(self):
        broadcaster = MagicMock(publish=AsyncMock())
        await BroadcastSink(broadcaster, "c", AsyncMock(return_value=None))(WorkerEvent(kind="failed", queue="q"))
        broadcaster.publish.assert_not_called()
