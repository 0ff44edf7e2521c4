"""
Unit Tests for the Bulk Import Pipeline

Covers the customer upsert, catalog scan modes, the per-user import job,
failure marking, pending-user resume and the catalog-gap broadcast.
The catalog is served by httpx.MockTransport.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import sqlalchemy as sa

from engagement_backbone.config.constants import JobState
from engagement_backbone.config.settings import Settings
from engagement_backbone.core.exceptions import ExternalApi5xxError, ImportInProgressError, UserNotFoundError
from engagement_backbone.core.resilience import is_retryable
from engagement_backbone.infrastructure.database.models import User
from engagement_backbone.infrastructure.external.catalog_client import CatalogClient
from engagement_backbone.pipelines.bulk_import import (
    IMPORT_QUEUE_CONFIG,
    BulkImportProcessor,
    BulkImportQueue,
    BulkImportService,
    CatalogGapSink,
    ImportOptions,
)
from engagement_backbone.pipelines.bulk_import.service import upsert_customer
from engagement_backbone.queueing import scripts
from engagement_backbone.queueing.events import WorkerEvent
from engagement_backbone.queueing.job import BulkEnqueueResult, Job
from engagement_backbone.queueing.job_queue import JobQueue
from engagement_backbone.queueing.worker import Worker, WorkerOptions

BASE = "https://catalog.test/admin/api/2024-01"

CUSTOMERS = [
    {"id": 1, "email": "one@example.com", "first_name": "One"},
    {"id": 2, "email": None, "first_name": None},
    {"id": 3, "email": "three@example.com", "first_name": "Three"},
]


def _catalog(settings, pages: list[list[dict]] | None = None, count: int = 3, customer: dict | None = None):
    pages = pages if pages is not None else [CUSTOMERS]

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/customers/count.json"):
            return httpx.Response(200, json={"count": count})
        if path.endswith("/customers.json"):
            index = int(request.url.params.get("page_info", 0))
            headers = {}
            if index + 1 < len(pages):
                headers["Link"] = f'<{BASE}/customers.json?page_info={index + 1}>; rel="next"'
            return httpx.Response(200, json={"customers": pages[index]}, headers=headers)
        if path.endswith("/orders.json"):
            return httpx.Response(200, json={"orders": []})
        return httpx.Response(200, json={"customer": customer or {"id": 1, "orders_count": 0}})

    return CatalogClient(settings, transport=httpx.MockTransport(handler))


@pytest.fixture
def imports(broker, database, settings, metrics):
    queue = JobQueue(IMPORT_QUEUE_CONFIG, broker, settings=settings, metrics=metrics)
    queue.enqueue_bulk = AsyncMock(
        side_effect=lambda jobs, chunk_size=None: BulkEnqueueResult(total=len(jobs), enqueued=len(jobs))
    )
    return BulkImportQueue(queue, database)


async def _user(database, user_id: int) -> User:
    async with database.session() as session:
        return await session.get(User, user_id)


@pytest.mark.unit
class TestUpsertCustomer:
    @pytest.mark.asyncio
    async def test_creates_inactive_pending_user(self, database):
        async with database.session() as session:
            outcome = await upsert_customer(session, CUSTOMERS[1])

        assert outcome.created is True
        assert outcome.should_import is True
        user = await _user(database, outcome.user_id)
        assert user.email == "2@placeholder.local"
        assert user.display_name == "2"
        assert user.active is False
        assert user.import_status == "pending"

    @pytest.mark.asyncio
    async def test_links_external_id_by_email(self, database, user_factory):
        user_id = await user_factory(external_id="legacy-9", email="one@example.com")

        async with database.session() as session:
            outcome = await upsert_customer(session, CUSTOMERS[0])

        assert outcome.user_id == user_id
        assert outcome.created is False
        assert outcome.updated is True
        assert (await _user(database, user_id)).external_id == "1"

    @pytest.mark.asyncio
    async def test_imported_user_skipped_unless_reimport(self, database, user_factory):
        user_id = await user_factory(
            external_id="1", email="one@example.com", first_name="One",
            full_history_imported=True, import_status="completed",
        )

        async with database.session() as session:
            skipped = await upsert_customer(session, CUSTOMERS[0])
        assert skipped.should_import is False
        assert skipped.updated is False

        async with database.session() as session:
            again = await upsert_customer(session, CUSTOMERS[0], reimport_all=True)
        assert again.should_import is True
        user = await _user(database, user_id)
        assert user.full_history_imported is False
        assert user.import_status == "pending"


@pytest.mark.unit
class TestBulkImportService:
    @pytest.mark.asyncio
    async def test_incremental_run(self, imports, database, settings):
        service = BulkImportService(imports, database, _catalog(settings, pages=[CUSTOMERS[:2], CUSTOMERS[2:]]))

        result = await service.start_bulk_import()

        assert result["success"] is True
        assert result["customers_fetched"] == 3
        assert result["users_created"] == 3
        assert result["jobs_enqueued"] == 3
        assert result["phase"] == "completed"
        users = imports.queue.enqueue_bulk.await_args.args[0]
        assert [j.data["external_id"] for j in users] == ["1", "2", "3"]
        assert service.import_in_progress is False

    @pytest.mark.asyncio
    async def test_intelligent_mode_stops_at_target(self, imports, database, settings):
        service = BulkImportService(imports, database, _catalog(settings))

        users = await service.fetch_unprocessed_users(ImportOptions(target_unprocessed=2))

        assert [u["external_id"] for u in users] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_customer_cap(self, imports, database, settings):
        service = BulkImportService(imports, database, _catalog(settings))

        users = await service.fetch_unprocessed_users(ImportOptions(full_import=True, batch_size=1))

        assert len(users) == 1

    @pytest.mark.asyncio
    async def test_unconfigured_catalog(self, imports, database):
        service = BulkImportService(imports, database, CatalogClient(Settings(EXTERNAL_CATALOG_TOKEN=None)))

        assert await service.start_bulk_import() == {"success": False, "error": "Catalog API not configured"}

    @pytest.mark.asyncio
    async def test_single_run_per_process(self, imports, database, settings):
        service = BulkImportService(imports, database, _catalog(settings))
        service.import_in_progress = True

        with pytest.raises(ImportInProgressError):
            await service.start_bulk_import()
        with pytest.raises(ImportInProgressError):
            await service.resume_import()

    @pytest.mark.asyncio
    async def test_failed_run_resets_flag(self, imports, database, settings):
        imports.queue.enqueue_bulk = AsyncMock(side_effect=RuntimeError("boom"))
        service = BulkImportService(imports, database, _catalog(settings))

        with pytest.raises(RuntimeError):
            await service.start_bulk_import()

        assert service.import_in_progress is False
        assert service.current_import_stats.phase.value == "failed"

    @pytest.mark.asyncio
    async def test_catalog_stats(self, imports, database, settings, user_factory):
        await user_factory(external_id="1", full_history_imported=True, import_status="completed")
        await user_factory(external_id="2")
        service = BulkImportService(imports, database, _catalog(settings, count=10))

        stats = await service.get_catalog_stats()

        assert stats["catalog"] == {"total_customers": 10}
        assert stats["database"] == {"total_users": 2, "fully_imported": 1, "pending": 1}
        assert stats["gap"] == {"missing_users": 8, "percentage_in_db": 20.0}

    @pytest.mark.asyncio
    async def test_catalog_stats_error(self, imports, database, settings):
        catalog = CatalogClient(settings, transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        service = BulkImportService(imports, database, catalog)

        assert "error" in await service.get_catalog_stats()

    @pytest.mark.asyncio
    async def test_users_without_history(self, imports, database, settings, user_factory):
        pending = await user_factory(external_id="1")
        await user_factory(external_id="2", full_history_imported=True, import_status="completed")
        service = BulkImportService(imports, database, _catalog(settings))

        rows = await service.get_users_without_history()

        assert [r["id"] for r in rows] == [pending]
        assert rows[0]["import_status"] == "pending"


@pytest.mark.unit
class TestBulkImportQueue:
    @pytest.mark.asyncio
    async def test_enqueue_all_pending_pages(self, imports, user_factory):
        for external_id in ("1", "2", "3"):
            await user_factory(external_id=external_id)
        await user_factory(external_id="4", import_status="completed")

        result = await imports.enqueue_all_pending_users(page_size=2)

        assert result == {"success": True, "enqueued": 3, "failed": 0, "total": 3}
        assert imports.queue.enqueue_bulk.await_count == 2

    @pytest.mark.asyncio
    async def test_recent_jobs_view(self, imports):
        job = Job(id="import-user-1", name="import-user", data={"user_id": 1, "email": "a@example.com"},
                  queue="bulk-import", state=JobState.FAILED, failure_reason="boom")
        imports.queue.recent_jobs = AsyncMock(return_value=[job])

        [view] = await imports.get_recent_jobs(5)

        assert view["id"] == "import-user-1"
        assert view["state"] == "failed"
        assert view["failed_reason"] == "boom"
        imports.queue.recent_jobs.assert_awaited_once_with(5)


@pytest.mark.unit
class TestBulkImportProcessor:
    def _job(self, user_id: int) -> Job:
        return Job(id=f"import-user-{user_id}", name="import-user", queue="bulk-import",
                   data={"user_id": user_id, "external_id": "1", "email": "user1@example.com"})

    @pytest.mark.asyncio
    async def test_imports_and_enqueues_classification(self, database, settings, user_factory):
        user_id = await user_factory(external_id="1")
        classification = MagicMock(enqueue=AsyncMock())
        processor = BulkImportProcessor(database, _catalog(settings), classification)

        result = await processor(self._job(user_id))

        assert result["success"] is True
        user = await _user(database, user_id)
        assert user.import_status == "completed"
        assert user.full_history_imported is True
        assert user.history_imported_at is not None
        classification.enqueue.assert_awaited_once_with(user_id, reason="import")

    @pytest.mark.asyncio
    async def test_transient_commit_failure_completes_in_one_attempt(
        self, database, settings, user_factory, fail_worker_commits
    ):
        user_id = await user_factory(external_id="1")
        classification = MagicMock(enqueue=AsyncMock())
        # call 1 marks in_progress, call 2 is the history import
        calls = fail_worker_commits(2)
        processor = BulkImportProcessor(database, _catalog(settings), classification)

        result = await processor(self._job(user_id))

        assert result["success"] is True
        assert calls == [1, 2, 3]
        user = await _user(database, user_id)
        assert user.import_status == "completed"
        assert user.full_history_imported is True
        classification.enqueue.assert_awaited_once_with(user_id, reason="import")

    @pytest.mark.asyncio
    async def test_failed_sync_is_retryable(self, database, user_factory):
        user_id = await user_factory(external_id="1")
        processor = BulkImportProcessor(
            database, CatalogClient(Settings(EXTERNAL_CATALOG_TOKEN=None)), MagicMock(enqueue=AsyncMock())
        )

        with pytest.raises(ExternalApi5xxError) as exc_info:
            await processor(self._job(user_id))

        assert is_retryable(exc_info.value)
        assert exc_info.value.details["reason"] == "catalog_unavailable"
        assert (await _user(database, user_id)).import_status == "in_progress"

    @pytest.mark.asyncio
    async def test_failed_sync_goes_back_for_another_attempt(self, broker, database, settings, metrics, user_factory):
        user_id = await user_factory(external_id="1")
        queue = JobQueue(IMPORT_QUEUE_CONFIG, broker, settings=settings, metrics=metrics)
        broker.commands.run_script.return_value = 0
        processor = BulkImportProcessor(
            database, CatalogClient(Settings(EXTERNAL_CATALOG_TOKEN=None)), MagicMock(enqueue=AsyncMock())
        )
        worker = Worker(queue, processor, WorkerOptions.from_config(queue.config), settings)
        job = self._job(user_id)
        job.lock_token = "token"
        job.max_attempts = 3

        await worker._run_job(job)

        script = broker.commands.run_script.await_args.args[0]
        assert script is scripts.RETRY_JOB
        assert job.attempts_made == 1
        assert job.state == JobState.DELAYED

    @pytest.mark.asyncio
    async def test_missing_user(self, database, settings):
        processor = BulkImportProcessor(database, _catalog(settings), MagicMock(enqueue=AsyncMock()))
        with pytest.raises(UserNotFoundError):
            await processor(self._job(404))

    @pytest.mark.asyncio
    async def test_failed_attempt_marks_user(self, database, settings, user_factory):
        user_id = await user_factory(external_id="1", import_status="in_progress")
        processor = BulkImportProcessor(database, _catalog(settings), MagicMock())

        await processor.on_failed(WorkerEvent(kind="failed", queue="bulk-import", job=self._job(user_id)))
        await processor.on_failed(WorkerEvent(kind="failed", queue="bulk-import", job=self._job(404)))

        assert (await _user(database, user_id)).import_status == "failed"


@pytest.mark.unit
class TestCatalogGapSink:
    @pytest.mark.asyncio
    async def test_throttled(self):
        now = [100.0]
        service = MagicMock(get_catalog_stats=AsyncMock(return_value={"gap": {}}))
        broadcaster = MagicMock(publish=AsyncMock(return_value=True))
        sink = CatalogGapSink(service, broadcaster, throttle_seconds=5, clock=lambda: now[0])

        await sink(WorkerEvent(kind="completed", queue="bulk-import"))
        now[0] += 1
        assert await sink.broadcast() is False
        assert await sink.broadcast(force=True) is True
        now[0] += 10
        await sink(WorkerEvent(kind="failed", queue="bulk-import"))

        assert broadcaster.publish.await_count == 3
        broadcaster.publish.assert_awaited_with("admin:queue-monitor", "catalog_stats_update", {"gap": {}})
