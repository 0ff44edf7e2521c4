"""
Bulk Import Service

Orchestrates one import run:

    1. scan the external customer catalog page by page
    2. upsert each customer into ``users`` (external id first, then e-mail)
    3. collect users whose order history still needs importing
    4. bulk-enqueue one import job per collected user

Scan modes:
    - incremental (default): whole catalog, only users without full history
    - intelligent: stop once ``target_unprocessed`` users were identified
    - full import: every customer, optionally capped by ``batch_size``
    - reimport_all: like incremental but re-imports users already imported

Only one run per process may be active at a time.

Author: Platform Engineering
Date: 2026-03-06
"""

import math
from contextlib import aclosing
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession

from engagement_backbone.config.constants import ImportStatus
from engagement_backbone.core.exceptions import DatabaseError, ExternalApiError, ImportInProgressError
from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.engine import Database
from engagement_backbone.infrastructure.database.models import User
from engagement_backbone.infrastructure.external.catalog_client import CatalogClient
from engagement_backbone.pipelines.bulk_import.queue import BulkImportQueue

logger = get_logger(__name__)

PLACEHOLDER_EMAIL_DOMAIN = "placeholder.local"


class ImportPhase(str, Enum):
    FETCHING_CUSTOMERS = "fetching_customers"
    PROCESSING_CUSTOMERS = "processing_customers"
    ENQUEUING_JOBS = "enqueuing_jobs"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ImportOptions:
    reimport_all: bool = False
    target_unprocessed: int | None = None
    max_customers: int | None = None
    full_import: bool = False
    batch_size: int | None = None

    @property
    def intelligent(self) -> bool:
        return self.target_unprocessed is not None and not self.full_import

    @property
    def customer_limit(self) -> int | None:
        return self.batch_size if self.full_import else self.max_customers

    def describe(self) -> str:
        if self.full_import:
            return f"full import (limit: {self.batch_size or 'unlimited'})"
        if self.intelligent:
            return f"intelligent (target: {self.target_unprocessed} unprocessed)"
        if self.max_customers:
            return f"capped (max: {self.max_customers} customers)"
        return "incremental"


@dataclass
class ImportStats:
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    phase: ImportPhase = ImportPhase.FETCHING_CUSTOMERS
    customers_fetched: int = 0
    users_created: int = 0
    users_updated: int = 0
    jobs_enqueued: int = 0
    errors: int = 0
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


@dataclass
class UpsertOutcome:
    user_id: int
    created: bool
    updated: bool
    should_import: bool


def customer_email(customer: dict[str, Any]) -> str:
    return customer.get("email") or f"{customer['id']}@{PLACEHOLDER_EMAIL_DOMAIN}"


async def upsert_customer(
    session: AsyncSession,
    customer: dict[str, Any],
    reimport_all: bool = False,
    full_import: bool = False,
) -> UpsertOutcome:
    """
    Create or update the user mirroring one catalog customer.

    Match by external id, then by e-mail (linking the external id). A new
    user starts inactive with a pending import.
    """
    external_id = str(customer["id"])
    email = customer_email(customer)
    first_name = customer.get("first_name")
    last_name = customer.get("last_name")

    user = await session.scalar(sa.select(User).where(User.external_id == external_id))
    if user is None:
        user = await session.scalar(sa.select(User).where(User.email == email).order_by(User.id).limit(1))
        if user is not None:
            user.external_id = external_id

    if user is None:
        user = User(
            external_id=external_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            display_name=first_name or email.split("@")[0],
            role="user",
            active=False,
            import_status=ImportStatus.PENDING.value,
            full_history_imported=False,
        )
        session.add(user)
        await session.flush()
        return UpsertOutcome(user_id=user.id, created=True, updated=False, should_import=True)

    updated = (
        user.external_id != external_id
        or user.email != email
        or user.first_name != first_name
        or user.last_name != last_name
    )
    user.email = email
    user.first_name = first_name
    user.last_name = last_name

    should_import = full_import or reimport_all or not user.full_history_imported
    if should_import and user.full_history_imported:
        user.import_status = ImportStatus.PENDING.value
        user.full_history_imported = False
    await session.flush()
    return UpsertOutcome(user_id=user.id, created=False, updated=updated, should_import=should_import)


class BulkImportService:
    """
    Import runs and read-side views of import state.

    Usage:
        service = BulkImportService(imports, database, catalog)
        await service.start_bulk_import(ImportOptions(target_unprocessed=500))
    """

    def __init__(self, imports: BulkImportQueue, database: Database, catalog: CatalogClient):
        self.imports = imports
        self.database = database
        self.catalog = catalog
        self.import_in_progress = False
        self.current_import_stats: ImportStats | None = None

    def is_available(self) -> bool:
        return self.catalog.is_available()

    def _ensure_idle(self) -> None:
        if self.import_in_progress:
            raise ImportInProgressError(
                "Import already in progress",
                details={"current_import_stats": self.current_import_stats.to_dict()
                         if self.current_import_stats else None},
            )

    async def start_bulk_import(self, options: ImportOptions | None = None) -> dict[str, Any]:
        """
        Run one catalog scan and enqueue the identified users.

        STAGE-IMP.1: Bulk import run

        Raises:
            ImportInProgressError: Another run is active
        """
        options = options or ImportOptions()
        self._ensure_idle()
        if not self.is_available():
            return {"success": False, "error": "Catalog API not configured"}

        self.import_in_progress = True
        stats = self.current_import_stats = ImportStats()
        logger.info(
            "Bulk import started",
            stage="IMP.1",
            mode=options.describe(),
            reimport_all=options.reimport_all,
        )
        try:
            users = await self.fetch_unprocessed_users(options)

            stats.phase = ImportPhase.ENQUEUING_JOBS
            result = await self.imports.enqueue_bulk(users)
            stats.jobs_enqueued = result.enqueued
            stats.errors += result.failed

            stats.phase = ImportPhase.COMPLETED
            stats.completed_at = datetime.now(timezone.utc).isoformat()
            logger.info("Bulk import finished", stage="IMP.1", **stats.to_dict())
            return {"success": True, **stats.to_dict()}
        except Exception as e:
            stats.phase = ImportPhase.FAILED
            logger.error("Bulk import failed", stage="IMP.1", error=str(e), exc_info=True)
            raise
        finally:
            self.import_in_progress = False

    async def fetch_unprocessed_users(self, options: ImportOptions) -> list[dict[str, Any]]:
        """
        Scan the catalog and upsert customers, returning users to import.

        STAGE-IMP.2: Catalog scan
        """
        stats = self.current_import_stats or ImportStats()
        limit = options.customer_limit
        page_size = self.catalog.config.CATALOG_PAGE_SIZE
        max_pages = math.ceil(limit / page_size) if limit else None

        to_import: list[dict[str, Any]] = []
        pages = 0
        stats.phase = ImportPhase.FETCHING_CUSTOMERS
        async with aclosing(self.catalog.iter_customer_pages(max_pages=max_pages)) as customer_pages:
            async for customers in customer_pages:
                pages += 1
                if not customers:
                    break
                stats.phase = ImportPhase.PROCESSING_CUSTOMERS
                for customer in customers:
                    if limit and stats.customers_fetched >= limit:
                        logger.info("Customer limit reached", stage="IMP.2", limit=limit)
                        return to_import
                    stats.customers_fetched += 1

                    try:
                        async with self.database.session() as session:
                            outcome = await upsert_customer(
                                session, customer, options.reimport_all, options.full_import
                            )
                    except DatabaseError as e:
                        stats.errors += 1
                        logger.warning(
                            "Customer upsert failed",
                            stage="IMP.2",
                            external_id=str(customer.get("id")),
                            error=str(e),
                        )
                        continue

                    if outcome.created:
                        stats.users_created += 1
                    elif outcome.updated:
                        stats.users_updated += 1
                    if not outcome.should_import:
                        continue

                    to_import.append(
                        {
                            "user_id": outcome.user_id,
                            "external_id": str(customer["id"]),
                            "email": customer_email(customer),
                        }
                    )
                    if options.intelligent and len(to_import) >= options.target_unprocessed:
                        logger.info(
                            "Unprocessed target reached",
                            stage="IMP.2",
                            target=options.target_unprocessed,
                            customers_checked=stats.customers_fetched,
                            pages=pages,
                        )
                        return to_import

        logger.info(
            "Catalog scan finished",
            stage="IMP.2",
            pages=pages,
            customers=stats.customers_fetched,
            to_import=len(to_import),
            created=stats.users_created,
            updated=stats.users_updated,
        )
        return to_import

    async def resume_import(self) -> dict[str, Any]:
        """Enqueue every user still pending from an earlier run."""
        self._ensure_idle()
        return await self.imports.enqueue_all_pending_users()

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    async def local_user_counts(self) -> dict[str, int]:
        async with self.database.session() as session:
            row = (
                await session.execute(
                    sa.select(
                        func.count(),
                        func.count().filter(User.full_history_imported.is_(True)),
                        func.count().filter(User.import_status == ImportStatus.PENDING.value),
                        func.count().filter(User.import_status == ImportStatus.IN_PROGRESS.value),
                        func.count().filter(User.import_status == ImportStatus.FAILED.value),
                    ).select_from(User)
                )
            ).one()
        total, imported, pending, in_progress, failed = (int(v or 0) for v in row)
        return {
            "total": total,
            "imported": imported,
            "pending": pending,
            "in_progress": in_progress,
            "failed": failed,
        }

    async def get_catalog_stats(self, bypass_cache: bool = False) -> dict[str, Any]:
        """
        Catalog size against the local store.

        STAGE-IMP.6: Catalog gap
        """
        try:
            catalog_count = await self.catalog.get_customer_count(bypass_cache=bypass_cache)
        except ExternalApiError as e:
            logger.warning("Catalog count unavailable", stage="IMP.6", error=str(e))
            return {"error": str(e)}

        local = await self.local_user_counts()
        return {
            "catalog": {"total_customers": catalog_count},
            "database": {
                "total_users": local["total"],
                "fully_imported": local["imported"],
                "pending": local["total"] - local["imported"],
            },
            "gap": {
                "missing_users": max(0, catalog_count - local["total"]),
                "percentage_in_db": round(local["total"] / catalog_count * 100, 1) if catalog_count else 0,
            },
        }

    async def get_progress(self) -> dict[str, Any]:
        return {
            "import_in_progress": self.import_in_progress,
            "current_import_stats": self.current_import_stats.to_dict() if self.current_import_stats else None,
            "queue": await self.imports.stats(),
            "users": await self.local_user_counts(),
        }

    async def get_users_without_history(self, limit: int = 100) -> list[dict[str, Any]]:
        async with self.database.session() as session:
            rows = (
                await session.execute(
                    sa.select(User.id, User.email, User.external_id, User.import_status, User.created_at)
                    .where(User.full_history_imported.is_(False))
                    .order_by(User.id)
                    .limit(limit)
                )
            ).all()
        return [
            {
                "id": r.id,
                "email": r.email,
                "external_id": r.external_id,
                "import_status": r.import_status,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]
