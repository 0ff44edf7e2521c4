"""
External Customer Catalog Client

Async REST client for the customer catalog:

- Cursor pagination through the ``Link`` header (``rel="next"``)
- Bearer access token
- 200 ms client-enforced delay between pages (catalog rate limit)
- 4xx → ExternalApi4xxError (non-retryable), 5xx/timeout → ExternalApi5xxError
- Transport blips retried with exponential backoff and jitter (tenacity)
- Customer count cached for 60 s

Usage:
    async with CatalogClient() as catalog:
        async for page in catalog.iter_customer_pages(max_pages=4):
            ...
"""

import asyncio
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.exceptions import ExternalApi4xxError, ExternalApi5xxError
from engagement_backbone.core.logging import get_logger

logger = get_logger(__name__)


class CatalogClient:
    """
    Client for the external customer catalog.

    The HTTP client is created lazily and reused; close() (or the async
    context manager) releases its connections.
    """

    def __init__(self, settings=None, transport: httpx.AsyncBaseTransport | None = None):
        self.config = (settings or get_settings()).catalog
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._count_cache: tuple[int, float] | None = None

    async def __aenter__(self) -> "CatalogClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def is_available(self) -> bool:
        return bool(self.config.EXTERNAL_CATALOG_TOKEN)

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.config.EXTERNAL_CATALOG_TOKEN:
                headers["Authorization"] = f"Bearer {self.config.EXTERNAL_CATALOG_TOKEN}"
            self._client = httpx.AsyncClient(
                base_url=self.config.EXTERNAL_CATALOG_URL.rstrip("/") + "/",
                headers=headers,
                timeout=httpx.Timeout(self.config.CATALOG_TIMEOUT),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """
        GET with retry on connection blips, mapping status codes to errors.

        STAGE-CAT.1: Catalog request
        """
        client = self._ensure_client()

        @retry(
            stop=stop_after_attempt(3),
            wait=wait_exponential_jitter(initial=0.5, max=4.0),
            retry=retry_if_exception_type(httpx.ConnectError),
            reraise=True,
        )
        async def _do_request() -> httpx.Response:
            return await client.get(url, params=params)

        try:
            response = await _do_request()
        except httpx.TimeoutException as e:
            raise ExternalApi5xxError(f"Catalog request timed out: {e}", details={"url": url})
        except httpx.TransportError as e:
            raise ExternalApi5xxError(f"Catalog unreachable: {e}", details={"url": url})

        status = response.status_code
        if status == 429 or status >= 500:
            raise ExternalApi5xxError(
                f"Catalog returned {status}", details={"url": url, "status": status, "body": response.text[:500]}
            )
        if status >= 400:
            raise ExternalApi4xxError(
                f"Catalog rejected request with {status}",
                details={"url": url, "status": status, "body": response.text[:500]},
            )
        return response

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    async def get_customer_count(self, bypass_cache: bool = False) -> int:
        """Total customers in the catalog, cached for CATALOG_COUNT_CACHE_TTL seconds."""
        if not self.is_available():
            logger.warning("Catalog token not configured", stage="CAT.2")
            return 0

        now = time.monotonic()
        if not bypass_cache and self._count_cache is not None:
            count, fetched_at = self._count_cache
            if now - fetched_at < self.config.CATALOG_COUNT_CACHE_TTL:
                return count

        response = await self._request("customers/count.json")
        count = int(response.json().get("count", 0))
        self._count_cache = (count, now)
        logger.info("Catalog customer count fetched", stage="CAT.2", count=count)
        return count

    async def iter_customer_pages(self, max_pages: int | None = None) -> AsyncIterator[list[dict[str, Any]]]:
        """
        Yield customer pages following rel="next" links.

        STAGE-CAT.3: Customer pagination

        Sleeps CATALOG_PAGE_DELAY_MS between pages. Stops after max_pages
        when given.
        """
        if not self.is_available():
            logger.warning("Catalog token not configured, no customers fetched", stage="CAT.3")
            return

        url: str | None = "customers.json"
        params: dict[str, Any] | None = {"limit": self.config.CATALOG_PAGE_SIZE}
        pages = 0
        while url is not None:
            response = await self._request(url, params=params)
            pages += 1
            customers = response.json().get("customers", [])
            logger.debug("Catalog page fetched", stage="CAT.3", page=pages, customers=len(customers))
            yield customers

            url = response.links.get("next", {}).get("url")
            params = None  # the next link carries its own cursor
            if max_pages is not None and pages >= max_pages:
                break
            if url is not None:
                await asyncio.sleep(self.config.CATALOG_PAGE_DELAY_MS / 1000)

    async def get_customer(self, external_id: str) -> dict[str, Any] | None:
        try:
            response = await self._request(f"customers/{external_id}.json")
        except ExternalApi4xxError as e:
            if e.details.get("status") == 404:
                return None
            raise
        return response.json().get("customer")

    async def iter_customer_orders(self, external_id: str) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield pages of one customer's orders (all statuses)."""
        url: str | None = f"customers/{external_id}/orders.json"
        params: dict[str, Any] | None = {"status": "any", "limit": self.config.CATALOG_PAGE_SIZE}
        while url is not None:
            response = await self._request(url, params=params)
            yield response.json().get("orders", [])
            url = response.links.get("next", {}).get("url")
            params = None
            if url is not None:
                await asyncio.sleep(self.config.CATALOG_PAGE_DELAY_MS / 1000)
