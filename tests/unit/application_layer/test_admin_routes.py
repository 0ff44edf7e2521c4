"""
Unit Tests for Admin Routes

Routes run against a MagicMock service container whose pipeline objects
carry AsyncMock methods. Also covers the BackboneError status mapping.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from engagement_backbone.api.admin_routes import run_obliterate
from engagement_backbone.app import create_app, status_for
from engagement_backbone.core.exceptions import (
    BrokerUnavailableError,
    DatabaseError,
    ImportInProgressError,
    UnknownCoinTypeError,
    WorkerInitializationError,
)
from engagement_backbone.pipelines.bulk_import import ImportOptions
from engagement_backbone.queueing.job import EnqueueResult


@pytest.fixture
def container():
    container = MagicMock()
    container.imports.queue.name = "bulk-import"
    container.imports.queue.obliterate_with_progress = AsyncMock(return_value={"deleted": 3})
    container.broadcaster.publish = AsyncMock(return_value=True)
    return container


@pytest.fixture
def client(container):
    app = create_app()
    app.state.container = container
    return TestClient(app)


@pytest.mark.unit
class TestBulkImportRoutes:
    def test_start_import(self, client, container):
        container.import_service.start_bulk_import = AsyncMock(return_value={"success": True, "jobs_enqueued": 2})

        response = client.post("/api/admin/bulk-import/start", json={"target_unprocessed": 50})

        assert response.status_code == 200
        assert response.json()["jobs_enqueued"] == 2
        options = container.import_service.start_bulk_import.await_args.args[0]
        assert isinstance(options, ImportOptions)
        assert options.target_unprocessed == 50
        assert options.full_import is False

    def test_import_in_progress_is_conflict(self, client, container):
        container.import_service.start_bulk_import = AsyncMock(
            side_effect=ImportInProgressError("Bulk import already in progress")
        )

        response = client.post("/api/admin/bulk-import/start", json={}, headers={"X-Request-ID": "req-9"})

        assert response.status_code == 409
        body = response.json()
        assert body["error_type"] == "ImportInProgressError"
        assert body["correlation_id"] == "req-9"

    def test_broker_unavailable_is_503(self, client, container):
        container.imports.stats = AsyncMock(side_effect=BrokerUnavailableError("Broker not ready"))

        assert client.get("/api/admin/bulk-import/queue/stats").status_code == 503

    def test_queue_stats(self, client, container):
        container.imports.stats = AsyncMock(return_value={"waiting": 4, "failed": 1})

        assert client.get("/api/admin/bulk-import/queue/stats").json() == {"waiting": 4, "failed": 1}

    def test_users_without_history(self, client, container):
        container.import_service.get_users_without_history = AsyncMock(return_value=[{"id": 1}, {"id": 2}])

        response = client.get("/api/admin/bulk-import/users-without-history", params={"limit": 2})

        assert response.json()["count"] == 2
        container.import_service.get_users_without_history.assert_awaited_once_with(limit=2)

    def test_clear_failed(self, client, container):
        container.imports.queue.clear_failed = AsyncMock(return_value=5)

        assert client.post("/api/admin/bulk-import/queue/clear-failed").json() == {"success": True, "removed": 5}

    def test_retry_failed_enqueues_default_limit(self, client, container):
        container.imports.retry_failed_enqueues = AsyncMock(return_value={"retried": 0, "succeeded": 0})

        client.post("/api/admin/bulk-import/retry-failed-enqueues")

        container.imports.retry_failed_enqueues.assert_awaited_once_with(limit=100)

    def test_obliterate_runs_in_background(self, client, container):
        response = client.post("/api/admin/bulk-import/queue/obliterate")

        assert response.status_code == 202
        assert response.json() == {"status": "started", "queue": "bulk-import", "channel": "admin:queue-monitor"}
        container.imports.queue.obliterate_with_progress.assert_awaited_once()


@pytest.mark.unit
class TestPipelineRoutes:
    def test_enqueue_classification(self, client, container):
        container.classification.enqueue = AsyncMock(return_value=EnqueueResult("user-5", True))

        response = client.post("/api/admin/classification/enqueue", json={"user_id": 5})

        assert response.json() == {"success": True, "job_id": "user-5", "created": True, "throttled": False}
        container.classification.enqueue.assert_awaited_once_with(5, reason="admin_action", force=True)

    def test_throttled_classification(self, client, container):
        container.classification.enqueue = AsyncMock(return_value=None)

        response = client.post("/api/admin/classification/enqueue", json={"user_id": 5, "force": False})

        assert response.json()["throttled"] is True

    def test_invalid_user_id(self, client):
        assert client.post("/api/admin/classification/enqueue", json={"user_id": 0}).status_code == 422

    def test_recalculate_coins(self, client, container):
        container.coins.enqueue = AsyncMock(return_value=EnqueueResult("recalc-5-1", True))

        response = client.post(
            "/api/admin/coins/recalculate", json={"user_id": 5, "coin_type": "flavor_coin", "reason": "refund"}
        )

        assert response.json()["job_id"] == "recalc-5-1"
        container.coins.enqueue.assert_awaited_once_with(5, coin_type="flavor_coin", reason="refund", context={})

    def test_unknown_coin_type_is_500(self, client, container):
        container.coins.enqueue = AsyncMock(side_effect=UnknownCoinTypeError("Unknown coin type: bitcoin"))

        response = client.post("/api/admin/coins/recalculate", json={"user_id": 5, "coin_type": "bitcoin"})

        assert response.status_code == 500
        assert response.json()["error_type"] == "UnknownCoinTypeError"

    def test_start_backfill(self, client, container):
        container.backfill.start_backfill = AsyncMock(return_value={"success": True, "jobs_enqueued": 3})

        assert client.post("/api/admin/engagement/backfill/start").json()["jobs_enqueued"] == 3

    def test_backfill_progress(self, client, container):
        container.backfill.get_progress = AsyncMock(return_value={"progress": 50, "is_running": True})

        assert client.get("/api/admin/engagement/backfill/progress").json()["progress"] == 50


@pytest.mark.unit
class TestRunObliterate:
    @pytest.mark.asyncio
    async def test_publishes_progress(self):
        async def obliterate(on_progress):
            await on_progress({"phase": "deleting", "deleted": 10})
            return {"deleted": 10}

        queue = MagicMock(obliterate_with_progress=obliterate)
        queue.name = "bulk-import"
        broadcaster = MagicMock(publish=AsyncMock(return_value=True))

        assert await run_obliterate(queue, broadcaster) == {"deleted": 10}
        broadcaster.publish.assert_awaited_once_with(
            "admin:queue-monitor", "obliterate_progress", {"queue": "bulk-import", "phase": "deleting", "deleted": 10}
        )

    @pytest.mark.asyncio
    async def test_broker_failure_is_reported(self):
        queue = MagicMock(obliterate_with_progress=AsyncMock(side_effect=BrokerUnavailableError("down")))
        queue.name = "bulk-import"
        broadcaster = MagicMock(publish=AsyncMock(return_value=True))

        assert await run_obliterate(queue, broadcaster) is None
        payload = broadcaster.publish.await_args.args[2]
        assert payload["phase"] == "failed"


@pytest.mark.unit
class TestStatusMapping:
    @pytest.mark.parametrize(
        "exc,expected",
        [
            (ImportInProgressError("busy"), 409),
            (BrokerUnavailableError("down"), 503),
            (DatabaseError("down"), 503),
            (WorkerInitializationError("down"), 503),
            (UnknownCoinTypeError("bitcoin"), 500),
        ],
    )
    def test_status_for(self, exc, expected):
        assert status_for(exc) == expected
