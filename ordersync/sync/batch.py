"""
Batch processor: reconciles one batch of marketplace orders into the store.

For a batch the steps run strictly in this order:

1. classify orders as new or existing (one lookup by external id)
2. bulk insert new orders, update existing ones row by row
3. re-resolve local ids for the whole batch
4. derive line items, payment, address and packages (package detail is
   fetched per package; a failed fetch yields a placeholder row). With
   ``include_price_detail`` the order price detail is fetched too and merged
   into the payment row; a failed fetch leaves the payment as mapped
5. replace each dependent collection: delete for the batch's orders, then insert
6. create tracking states for new (order, tracking number) pairs only
7. link the batch's tracking states, new and existing, to the current package rows
8. notify the tracking service once for orders that gained tracking states
9. run the tracking problem detector for every order

Upstream fetch failures inside the batch degrade to partial records. Store
failures propagate: the batch is not wrapped in a transaction, so a failed
batch may be partially applied and is safe to re-run.
"""

import logging
from collections.abc import Sequence
from typing import Any

import requests

from ..adapters.marketplace import MarketplaceError
from ..common.etl import nested_list, normalize_text
from ..db.store import ReconciliationStore
from ..observability import UPSTREAM_FAILURES
from .mapper import (
    map_address,
    map_districts,
    map_line_items,
    map_order,
    map_package,
    map_payment,
    map_price_detail,
    map_tracking_state,
    order_external_id,
)
from .tracking import TrackingProblemDetector
from .trigger import TrackingTrigger

logger = logging.getLogger(__name__)


def empty_batch_stats() -> dict[str, Any]:
    return {
        "orders_received": 0,
        "orders_skipped": 0,
        "orders_inserted": 0,
        "orders_updated": 0,
        "status_changes": [],
        "line_items": 0,
        "payments": 0,
        "addresses": 0,
        "districts": 0,
        "packages": 0,
        "package_fetch_failures": 0,
        "price_details_fetched": 0,
        "price_detail_fetch_failures": 0,
        "tracking_states_created": 0,
        "tracking_states_linked": 0,
        "tracking_jobs_submitted": 0,
        "tracking_fetches": 0,
        "timeline_entries_created": 0,
        "problem_orders": 0,
    }


class BatchProcessor:
    """Core reconciliation of one batch of raw orders."""

    def __init__(
        self,
        store: ReconciliationStore,
        client,
        org_id: str,
        shop_id: str,
        trigger: TrackingTrigger | None = None,
        detector: TrackingProblemDetector | None = None,
        channel: str = "marketplace",
        include_price_detail: bool = False,
    ):
        self.store = store
        self.client = client
        self.org_id = org_id
        self.shop_id = shop_id
        self.trigger = trigger
        self.detector = detector or TrackingProblemDetector(store, client, source=channel)
        self.channel = channel
        self.include_price_detail = include_price_detail

    def process(self, raw_orders: Sequence[dict]) -> dict[str, Any]:
        """
        Reconcile a batch of raw orders.

        Args:
            raw_orders: Order payloads from the order search API

        Returns:
            Batch statistics (see ``empty_batch_stats``)
        """
        stats = empty_batch_stats()
        stats["orders_received"] = len(raw_orders)

        orders_by_id: dict[str, dict] = {}
        for raw_order in raw_orders:
            external_id = order_external_id(raw_order)
            if not external_id:
                logger.warning("Skipping order without id")
                stats["orders_skipped"] += 1
                continue
            if external_id in orders_by_id:
                stats["orders_skipped"] += 1
                continue
            orders_by_id[external_id] = raw_order

        if not orders_by_id:
            return stats

        external_ids = list(orders_by_id)

        # New vs existing, by external id
        existing = {order.order_id: order for order in self.store.find_existing_orders(external_ids)}
        new_rows = []
        updates = []
        for external_id, raw_order in orders_by_id.items():
            row = map_order(raw_order, self.org_id, self.shop_id, self.channel)
            current = existing.get(external_id)
            if current is None:
                new_rows.append(row)
                continue
            updates.append((current.id, row))
            if current.status != row["status"]:
                stats["status_changes"].append(
                    {"order_id": external_id, "old_status": current.status, "new_status": row["status"]}
                )

        # Orders
        stats["orders_inserted"] = self.store.bulk_insert_orders(new_rows)
        for order_db_id, row in updates:
            self.store.update_order(order_db_id, row)
        stats["orders_updated"] = len(updates)

        # Local ids for the whole batch, new and existing
        id_map = self.store.resolve_order_ids(external_ids)
        missing = [external_id for external_id in external_ids if external_id not in id_map]
        if missing:
            logger.warning(f"Could not resolve local ids for {len(missing)} orders: {missing[:10]}")

        resolved = [
            (external_id, id_map[external_id], raw_order)
            for external_id, raw_order in orders_by_id.items()
            if external_id in id_map
        ]
        order_db_ids = [order_db_id for _, order_db_id, _ in resolved]

        # Dependents
        line_items: list[dict] = []
        payments: list[dict] = []
        addresses: list[dict] = []
        packages: list[dict] = []
        seen_packages = set()

        for external_id, order_db_id, raw_order in resolved:
            line_items.extend(map_line_items(raw_order, order_db_id))

            payment = map_payment(raw_order, order_db_id)
            if payment:
                if self.include_price_detail:
                    price_detail = self._fetch_price_detail(external_id, stats)
                    if price_detail:
                        payment["channel_data"].update(map_price_detail(price_detail))
                payments.append(payment)

            address = map_address(raw_order, order_db_id)
            if address:
                addresses.append(address)

            for package in self._derive_packages(external_id, order_db_id, raw_order, stats):
                key = (order_db_id, package["package_id"])
                if key in seen_packages:
                    continue
                seen_packages.add(key)
                packages.append(package)

        # Delete-then-insert per collection
        stats["line_items"] = self.store.replace_line_items(order_db_ids, line_items)
        stats["payments"] = self.store.replace_payments(order_db_ids, payments)
        new_addresses = self.store.replace_addresses(order_db_ids, addresses)
        stats["addresses"] = len(new_addresses)
        districts = []
        for address in new_addresses:
            districts.extend(map_districts(address.id, address.channel_data))
        stats["districts"] = self.store.insert_districts(districts)
        stats["packages"] = self.store.replace_packages(order_db_ids, packages)

        candidates = self._tracking_candidates(packages)
        already_tracked = self.store.find_existing_tracking_keys(candidates.keys())
        created = self.store.insert_tracking_states(
            [row for key, row in candidates.items() if key not in already_tracked]
        )
        stats["tracking_states_created"] = len(created)

        # Package rows were just replaced, so existing states need relinking too
        stats["tracking_states_linked"] = self.store.link_tracking_states_to_packages(candidates.keys())

        triggered_orders = sorted({order_db_id for order_db_id, _ in created})
        if triggered_orders and self.trigger is not None:
            stats["tracking_jobs_submitted"] = self.trigger.notify(triggered_orders)

        # Problem-in-transit check
        for external_id, order_db_id, _ in resolved:
            result = self.detector.check_order(order_db_id, external_id)
            stats["tracking_fetches"] += int(result["fetched"])
            stats["timeline_entries_created"] += result["entries_created"]
            stats["problem_orders"] += int(result["problem"])

        logger.info(
            f"Batch done: {stats['orders_inserted']} inserted, {stats['orders_updated']} updated, "
            f"{stats['packages']} packages, {stats['tracking_states_created']} new tracking states"
        )
        return stats

    def _derive_packages(
        self, external_id: str, order_db_id: int, raw_order: dict, stats: dict
    ) -> list[dict]:
        """Map the order's packages, fetching detail for each one."""
        raw_line_items = [item for item in nested_list(raw_order, "line_items") if isinstance(item, dict)]
        rows = []

        for raw_package in nested_list(raw_order, "packages"):
            if not isinstance(raw_package, dict):
                continue
            package_id = normalize_text(raw_package.get("id") or raw_package.get("package_id"))
            if not package_id:
                continue

            detail = None
            fetch_error = None
            try:
                detail = self.client.get_package_detail(package_id)
            except (MarketplaceError, requests.RequestException) as e:
                fetch_error = str(e) or e.__class__.__name__
                stats["package_fetch_failures"] += 1
                UPSTREAM_FAILURES.labels(call="package_detail").inc()
                logger.warning(
                    f"Package detail fetch failed for {package_id} (order {external_id}): {e}"
                )

            row = map_package(raw_package, order_db_id, raw_line_items, detail, fetch_error)
            if row:
                rows.append(row)

        return rows

    def _tracking_candidates(self, packages: list[dict]) -> dict[tuple[int, str], dict]:
        """One tracking state row per (order, tracking number) pair in the batch's packages."""
        candidates: dict[tuple[int, str], dict] = {}
        for package in packages:
            tracking_number = normalize_text(package.get("tracking_number"))
            if not tracking_number:
                continue
            key = (package["order_id"], tracking_number)
            if key not in candidates:
                candidates[key] = map_tracking_state(package, self.org_id, self.shop_id)
        return candidates

    def _fetch_price_detail(self, external_id: str, stats: dict) -> dict | None:
        """Fetch the order price detail. None when it is empty or the fetch fails."""
        try:
            detail = self.client.get_price_detail(external_id)
        except (MarketplaceError, requests.RequestException) as e:
            stats["price_detail_fetch_failures"] += 1
            UPSTREAM_FAILURES.labels(call="price_detail").inc()
            logger.warning(f"Price detail fetch failed for order {external_id}: {e}")
            return None

        if detail:
            stats["price_details_fetched"] += 1
        return detail
