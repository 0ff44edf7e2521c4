"""
Purchase History

Imports one customer's order history from the external catalog into
customer_order_items. Called by the bulk-import worker.

- Users whose full history is already imported are skipped
- Zero-order fast path when the catalog reports orders_count = 0
- Line items are upserted by line-item id, so re-runs are idempotent
"""

import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from engagement_backbone.core.logging.logger import get_logger
from engagement_backbone.infrastructure.database.models import CustomerOrderItem, User, utcnow
from engagement_backbone.infrastructure.external.catalog_client import CatalogClient

logger = get_logger(__name__)


@dataclass
class SyncResult:
    success: bool
    items_imported: int = 0
    orders_processed: int = 0
    duration_ms: int = 0
    skipped: bool = False
    fast_path: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def extract_order_items(orders: list[dict[str, Any]], user_id: int, email: str) -> list[dict[str, Any]]:
    """Flatten catalog orders into line-item rows; items without a product are skipped."""
    items: list[dict[str, Any]] = []
    for order in orders:
        order_number = order.get("name") or (str(order["order_number"]) if order.get("order_number") else None)
        order_date = _parse_timestamp(order.get("created_at") or order.get("processed_at"))
        if not order_number or order_date is None:
            logger.warning("Skipping order without number or date", stage="SVC.4", order_id=order.get("id"))
            continue

        for line in order.get("line_items") or []:
            product_id = line.get("product_id")
            if not product_id or not line.get("id"):
                continue
            product_id = str(product_id)
            if product_id.startswith("gid://"):
                product_id = product_id.rsplit("/", 1)[-1]
            items.append(
                {
                    "line_item_id": str(line["id"]),
                    "order_number": order_number,
                    "order_date": order_date,
                    "product_id": product_id,
                    "sku": line.get("sku") or None,
                    "quantity": line.get("quantity") or 1,
                    "fulfillment_status": line.get("fulfillment_status") or order.get("fulfillment_status"),
                    "user_id": user_id,
                    "customer_email": email,
                    "line_item_data": {
                        "title": line.get("title"),
                        "variant_id": line.get("variant_id"),
                        "variant_title": line.get("variant_title"),
                        "price": line.get("price"),
                    },
                }
            )
    return items


class PurchaseHistoryService:
    """
    Order-history import for one user.

    Catalog and database errors propagate: the import job decides between
    retry and terminal failure.
    """

    def __init__(self, session: AsyncSession, catalog: CatalogClient):
        self.session = session
        self.catalog = catalog

    async def upsert_order_items(self, items: list[dict[str, Any]]) -> int:
        if not items:
            return 0
        by_id = {item["line_item_id"]: item for item in items}
        existing = {
            row.line_item_id: row
            for row in await self.session.scalars(
                sa.select(CustomerOrderItem).where(CustomerOrderItem.line_item_id.in_(list(by_id)))
            )
        }
        for line_item_id, item in by_id.items():
            row = existing.get(line_item_id)
            if row is None:
                self.session.add(CustomerOrderItem(**item))
            else:
                for name, value in item.items():
                    setattr(row, name, value)
        await self.session.flush()
        return len(by_id)

    async def sync_user_orders(self, user: User) -> SyncResult:
        """
        Import a user's full order history.

        STAGE-SVC.4: Purchase history sync
        """
        if not self.catalog.is_available():
            logger.warning("Catalog not configured, skipping order sync", stage="SVC.4", user_id=user.id)
            return SyncResult(success=False, reason="catalog_unavailable")

        if user.full_history_imported:
            logger.debug("Full history already imported", stage="SVC.4", user_id=user.id)
            return SyncResult(success=True, skipped=True, reason="already_imported")

        started = time.perf_counter()

        def _elapsed() -> int:
            return int((time.perf_counter() - started) * 1000)

        customer = await self.catalog.get_customer(user.external_id)
        if customer is not None and customer.get("orders_count") == 0:
            user.orders_count = 0
            user.last_order_synced_at = utcnow()
            logger.debug("Zero-order fast path", stage="SVC.4", user_id=user.id)
            return SyncResult(success=True, fast_path=True, duration_ms=_elapsed())

        orders_processed = 0
        items_imported = 0
        async for orders in self.catalog.iter_customer_orders(user.external_id):
            orders_processed += len(orders)
            items_imported += await self.upsert_order_items(extract_order_items(orders, user.id, user.email))

        user.orders_count = orders_processed
        user.last_order_synced_at = utcnow()
        await self.session.flush()

        result = SyncResult(
            success=True,
            items_imported=items_imported,
            orders_processed=orders_processed,
            duration_ms=_elapsed(),
        )
        logger.info(
            "Order sync completed",
            stage="SVC.4",
            user_id=user.id,
            items=items_imported,
            orders=orders_processed,
            duration_ms=result.duration_ms,
        )
        return result
