"""
Tracking problem detection.

Scans tracking event descriptions for a fixed vocabulary of negative delivery
signals and flags the order as "problem in transit". Tracking events are
fetched from the marketplace at most once per order: once any timeline entry
is stored, later syncs only rescan the stored entries.
"""

import logging
from typing import Any

import requests

from ..adapters.marketplace import MarketplaceError
from ..common.etl import epoch_millis, field, parse_epoch
from ..db.store import ReconciliationStore
from ..observability import PROBLEM_ORDERS_FLAGGED, UPSTREAM_FAILURES

logger = logging.getLogger(__name__)

NEGATIVE_TRACKING_KEYWORDS = (
    "couldn't be delivered",
    "could not be delivered",
    "unable to deliver",
    "failed to deliver",
    "delivery failed",
    "delivery attempt failed",
    "delivery attempt was unsuccessful",
    "undeliverable",
    "return to sender",
    "returned to sender",
    "returning to sender",
    "package returned to sender",
    "lost in transit",
    "package lost",
    "delivery exception",
    "package damaged",
    "damaged in transit",
    "package could not be delivered",
)

DESCRIPTION_KEYS = ("description", "status_description", "message", "detail")

DEFAULT_TRACKING_SOURCE = "marketplace"


def extract_tracking_description(event: Any) -> str:
    """First non-blank description-like field of a tracking event, or ""."""
    if not isinstance(event, dict):
        return ""

    for key in DESCRIPTION_KEYS:
        value = field(event, key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def is_negative_tracking_description(description: str | None) -> bool:
    """Case-insensitive substring match against the negative vocabulary."""
    if not description:
        return False
    normalized = description.lower()
    return any(keyword in normalized for keyword in NEGATIVE_TRACKING_KEYWORDS)


def tracking_events_indicate_problem(events: Any) -> bool:
    if not isinstance(events, list):
        return False
    return any(is_negative_tracking_description(extract_tracking_description(e)) for e in events)


def _event_millis(event: dict) -> int:
    for key in ("update_time_millis", "update_time", "occurred_at", "time"):
        millis = epoch_millis(field(event, key))
        if millis:
            return millis
    return 0


def prepare_tracking_event_records(
    order_db_id: int, events: list, source: str = DEFAULT_TRACKING_SOURCE
) -> list[dict]:
    """
    Build OrderTrackingInfo rows from raw tracking events.

    Events are ordered oldest first by their upstream timestamp (upstream
    order breaks ties) and numbered from 1. Events without a description
    are dropped.
    """
    prepared = []
    for index, event in enumerate(events):
        if not isinstance(event, dict):
            continue
        description = extract_tracking_description(event)
        if not description:
            continue
        prepared.append((_event_millis(event), index, description))

    prepared.sort(key=lambda item: (item[0], item[1]))

    return [
        {
            "order_id": order_db_id,
            "description": description,
            "sequence": sequence,
            "update_time_milli": millis,
            "occurred_at": parse_epoch(millis),
            "source": source,
        }
        for sequence, (millis, _, description) in enumerate(prepared, start=1)
    ]


class TrackingProblemDetector:
    """Per-order timeline guard and negative-signal detection."""

    def __init__(self, store: ReconciliationStore, client, source: str = DEFAULT_TRACKING_SOURCE):
        self.store = store
        self.client = client
        self.source = source

    def _flag(self, order_db_id: int, external_order_id: str) -> bool:
        changed = self.store.mark_problem_in_transit(order_db_id)
        if changed:
            PROBLEM_ORDERS_FLAGGED.inc()
            logger.info(f"Marked order {external_order_id} as problem in transit")
        return changed

    def check_order(self, order_db_id: int, external_order_id: str) -> dict:
        """
        Run the timeline guard for one order.

        Returns:
            Dict with ``problem`` (negative signal found), ``fetched`` (upstream
            tracking was called) and ``entries_created``
        """
        result = {"problem": False, "fetched": False, "entries_created": 0}

        existing = self.store.get_timeline_entries(order_db_id)
        if existing:
            if any(is_negative_tracking_description(entry.description) for entry in existing):
                result["problem"] = True
                self._flag(order_db_id, external_order_id)
            return result

        result["fetched"] = True
        try:
            response = self.client.get_order_tracking(external_order_id)
        except (MarketplaceError, requests.RequestException) as e:
            UPSTREAM_FAILURES.labels(call="order_tracking").inc()
            logger.warning(f"Failed to fetch tracking for order {external_order_id}: {e}")
            return result

        events = response.get("events") if isinstance(response, dict) else None
        if not isinstance(events, list) or not events:
            logger.debug(f"No tracking events for order {external_order_id}")
            return result

        if tracking_events_indicate_problem(events):
            result["problem"] = True
            self._flag(order_db_id, external_order_id)

        records = prepare_tracking_event_records(order_db_id, events, self.source)
        result["entries_created"] = self.store.insert_timeline_entries(records)
        return result
