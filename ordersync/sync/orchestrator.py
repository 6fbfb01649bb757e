"""
Sync orchestrator: paginates the marketplace and feeds the batch processor.

All pages are fetched first (a page failure stops pagination but keeps the
orders already fetched), then the full list is processed in fixed-size
batches. A sync by order id fetches the ids in chunks instead of pages and
follows the same rules. Batch failures are not caught here.
"""

import logging
from collections.abc import Callable
from typing import Any

import requests

from ..adapters.marketplace import MAX_ORDER_IDS_PER_REQUEST, MarketplaceError
from ..observability import UPSTREAM_FAILURES
from ..utils.rate_limit import RateLimiter
from .batch import BatchProcessor

logger = logging.getLogger(__name__)

# Pagination safety limit
MAX_PAGES = 1000

# Batch counters summed into the run result
SUMMED_STATS = (
    "orders_inserted",
    "orders_updated",
    "orders_skipped",
    "line_items",
    "payments",
    "addresses",
    "districts",
    "packages",
    "package_fetch_failures",
    "price_details_fetched",
    "price_detail_fetch_failures",
    "tracking_states_created",
    "tracking_states_linked",
    "tracking_jobs_submitted",
    "tracking_fetches",
    "timeline_entries_created",
    "problem_orders",
)


class SyncOrchestrator:
    """Drives one full sync run for a shop."""

    def __init__(
        self,
        client,
        processor: BatchProcessor,
        rate_limiter: RateLimiter | None = None,
        batch_size: int = 50,
        batch_delay: float = 0.5,
        sort_by: str = "update_time",
        sort_direction: str = "DESC",
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.client = client
        self.processor = processor
        self.rate_limiter = rate_limiter or RateLimiter("orchestrator")
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.sort_by = sort_by
        self.sort_direction = sort_direction

    def fetch_page(self, filters: dict, page_size: int, page_token: str | None = None) -> dict:
        return self.client.list_orders(
            page_size=page_size,
            sort_by=self.sort_by,
            sort_direction=self.sort_direction,
            page_token=page_token,
            filters=filters,
        )

    def fetch_all_orders(self, filters: dict, page_size: int) -> tuple[list[dict], int, dict | None]:
        """
        Fetch every page of orders matching ``filters``.

        Returns:
            Tuple of (orders, pages_processed, first_page). ``first_page`` is the
            raw payload of the first page, None if it could not be fetched.
        """
        orders: list[dict] = []
        pages = 0
        first_page = None
        page_token = None

        while pages < MAX_PAGES:
            try:
                page = self.fetch_page(filters, page_size, page_token)
            except (MarketplaceError, requests.RequestException) as e:
                UPSTREAM_FAILURES.labels(call="list_orders").inc()
                logger.error(
                    f"Failed to fetch order page {pages + 1}: {e}; "
                    f"keeping {len(orders)} orders already fetched"
                )
                break

            if first_page is None:
                first_page = page.get("raw")

            page_orders = page.get("orders") or []
            orders.extend(page_orders)
            pages += 1
            logger.info(f"Fetched page {pages}: {len(page_orders)} orders, total {len(orders)}")

            page_token = page.get("next_page_token")
            if not page_token:
                break
        else:
            logger.warning(f"Order pagination safety limit reached ({MAX_PAGES} pages)")

        return orders, pages, first_page

    def fetch_orders_by_id(self, order_ids: list[str]) -> tuple[list[dict], int]:
        """
        Fetch the given orders in chunks of MAX_ORDER_IDS_PER_REQUEST ids.

        A failed chunk stops fetching but keeps the orders already fetched,
        like a failed page.

        Returns:
            Tuple of (orders, requests_made)
        """
        order_ids = list(dict.fromkeys(order_ids))
        orders: list[dict] = []
        chunks = 0

        for index in range(0, len(order_ids), MAX_ORDER_IDS_PER_REQUEST):
            chunk = order_ids[index : index + MAX_ORDER_IDS_PER_REQUEST]
            try:
                chunk_orders = self.client.get_orders(chunk)
            except (MarketplaceError, requests.RequestException) as e:
                UPSTREAM_FAILURES.labels(call="get_orders").inc()
                logger.error(
                    f"Failed to fetch orders {index + 1}-{index + len(chunk)} by id: {e}; "
                    f"keeping {len(orders)} orders already fetched"
                )
                break

            orders.extend(chunk_orders)
            chunks += 1
            logger.info(f"Fetched {len(chunk_orders)} of {len(chunk)} requested orders")

        if len(orders) < len(order_ids):
            logger.warning(f"{len(order_ids) - len(orders)} requested orders were not returned")
        return orders, chunks

    def run(
        self,
        filters: dict,
        page_size: int,
        order_filter: Callable[[dict], bool] | None = None,
        order_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        """
        Fetch all orders and reconcile them batch by batch.

        Args:
            filters: Search body passed to the marketplace
            page_size: Orders per page
            order_filter: Optional client-side predicate applied after fetching
            order_ids: Fetch exactly these orders instead of searching; ``filters``
                and ``page_size`` are then unused

        Returns:
            Aggregate stats with ``orders_fetched``, ``orders_processed``,
            ``pages_processed``, ``batches_processed`` and summed batch counters
        """
        if order_ids:
            orders, pages = self.fetch_orders_by_id(order_ids)
        else:
            orders, pages, _ = self.fetch_all_orders(filters, page_size)
        fetched = len(orders)
        if order_filter is not None:
            orders = [order for order in orders if order_filter(order)]

        result: dict[str, Any] = {
            "orders_fetched": fetched,
            "orders_processed": 0,
            "pages_processed": pages,
            "batches_processed": 0,
            "status_changes": [],
            **{name: 0 for name in SUMMED_STATS},
        }

        total_batches = (len(orders) + self.batch_size - 1) // self.batch_size
        for index in range(0, len(orders), self.batch_size):
            batch = orders[index : index + self.batch_size]
            batch_number = index // self.batch_size + 1
            logger.info(f"Processing batch {batch_number}/{total_batches} ({len(batch)} orders)")

            stats = self.processor.process(batch)

            result["batches_processed"] += 1
            result["orders_processed"] += len(batch) - stats.get("orders_skipped", 0)
            result["status_changes"].extend(stats.get("status_changes", []))
            for name in SUMMED_STATS:
                result[name] += stats.get(name, 0)

            if batch_number < total_batches:
                self.rate_limiter.pause(self.batch_delay)

        return result
