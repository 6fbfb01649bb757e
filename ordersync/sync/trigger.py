"""
Tracking trigger: asks the tracking service to refresh newly tracked packages.

Fire-and-forget. Failures are logged and never raised to the batch; the
receiver is expected to tolerate duplicate jobs.
"""

import logging
from collections.abc import Sequence

import requests

from ..adapters.tracking_service import TrackingServiceError
from ..common.etl import field, nested, normalize_text
from ..db.store import ReconciliationStore
from ..observability import UPSTREAM_FAILURES

logger = logging.getLogger(__name__)


def provider_slug(provider_id: str | None, provider_name: str | None) -> str | None:
    """Lowercased provider id, else provider name."""
    candidate = normalize_text(provider_id) or normalize_text(provider_name)
    return candidate.lower() if candidate else None


def _order_postal_code(postal_code: str | None, channel_data: dict | None) -> str | None:
    if normalize_text(postal_code):
        return normalize_text(postal_code)
    return normalize_text(
        field(channel_data, "postal_code")
        or field(nested(channel_data, "recipient_address"), "postal_code")
    )


def build_tracking_jobs(orders: Sequence, packages: Sequence) -> list[dict]:
    """
    Build one job per distinct (tracking number, provider).

    Args:
        orders: Rows with id, channel_data and postal_code
        packages: Rows with order_id, tracking_number, shipping_provider_id and
            shipping_provider_name

    Orders without any trackable package fall back to the order-level tracking
    number and provider kept in ``channel_data``.
    """
    packages_by_order: dict[int, list] = {}
    for package in packages:
        packages_by_order.setdefault(package.order_id, []).append(package)

    jobs = []
    seen_jobs = set()
    seen_orders = set()

    for order in orders:
        if order.id in seen_orders:
            continue
        seen_orders.add(order.id)

        channel_data = order.channel_data if isinstance(order.channel_data, dict) else {}
        postal_code = _order_postal_code(order.postal_code, channel_data)
        tracking_numbers = set()

        candidates = [
            (
                normalize_text(package.tracking_number),
                provider_slug(package.shipping_provider_id, package.shipping_provider_name),
                normalize_text(package.shipping_provider_name),
            )
            for package in packages_by_order.get(order.id, [])
        ]

        for tracking_number, slug, provider_name in candidates:
            if not tracking_number or tracking_number in tracking_numbers or not slug:
                continue
            key = (tracking_number, slug)
            if key in seen_jobs:
                continue
            seen_jobs.add(key)
            tracking_numbers.add(tracking_number)
            provider = provider_name.lower() if provider_name else slug
            jobs.append(_job(tracking_number, provider, postal_code))

        if not tracking_numbers:
            tracking_number = normalize_text(field(channel_data, "tracking_number"))
            slug = provider_slug(
                field(channel_data, "shipping_provider_id"), field(channel_data, "shipping_provider")
            )
            if tracking_number and slug and (tracking_number, slug) not in seen_jobs:
                seen_jobs.add((tracking_number, slug))
                jobs.append(_job(tracking_number, slug, postal_code))

    return jobs


def _job(tracking_number: str, provider: str, postal_code: str | None) -> dict:
    job = {"tracking_id": tracking_number, "provider": provider}
    if postal_code:
        job["post_code"] = postal_code
    return job


class TrackingTrigger:
    """Notifies the tracking service once per batch for orders with new tracking states."""

    def __init__(self, store: ReconciliationStore, client):
        self.store = store
        self.client = client

    def notify(self, order_ids: Sequence[int]) -> int:
        """
        Submit tracking jobs for the given local order ids.

        Returns:
            Number of jobs submitted (0 when nothing was trackable or the call failed)
        """
        order_ids = list(dict.fromkeys(order_ids))
        if not order_ids:
            return 0

        orders = self.store.find_orders_for_tracking(order_ids)
        packages = self.store.find_packages_for_orders(order_ids)
        jobs = build_tracking_jobs(orders, packages)
        if not jobs:
            logger.debug(f"No trackable packages for {len(order_ids)} orders")
            return 0

        try:
            self.client.post_jobs(jobs)
        except TrackingServiceError as e:
            UPSTREAM_FAILURES.labels(call="tracking_service").inc()
            logger.warning(f"Tracking service rejected {len(jobs)} jobs: {e}")
            return 0
        except requests.RequestException as e:
            UPSTREAM_FAILURES.labels(call="tracking_service").inc()
            logger.warning(f"Failed to call tracking service: {e}")
            return 0

        return len(jobs)
