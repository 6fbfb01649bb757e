#!/usr/bin/env python3
"""
Order sync job for the ordersync service.

Entry point used by the CLI and the scheduler: validates a sync request,
wires the marketplace client, reconciliation store, tracking trigger and
detector together, runs the orchestrator and records sync state and metrics.
"""

import logging
import sys
import time
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from ..adapters.marketplace import MAX_ORDER_IDS_PER_REQUEST, MarketplaceClient, ShopCredentials
from ..adapters.tracking_service import TrackingServiceClient
from ..config.loader import cfg, get_shop_config
from ..db.deps import get_session
from ..db.store import ReconciliationStore
from ..db.sync_state import (
    get_last_sync_time,
    mark_sync_error,
    mark_sync_running,
    mark_sync_success,
    order_sync_domain,
)
from ..observability import record_sync_run
from ..sync.batch import BatchProcessor
from ..sync.orchestrator import SyncOrchestrator
from ..sync.tracking import TrackingProblemDetector
from ..sync.trigger import TrackingTrigger
from ..utils.rate_limit import RateLimiter
from ..utils.time_windows import compute_lookback_window, to_epoch_seconds, utc_now

logger = logging.getLogger(__name__)


class OrderFilters(BaseModel):
    """Order search filters accepted by the sync entry point."""

    status_in: list[str] = Field(default_factory=list)
    created_after: datetime | None = None
    created_before: datetime | None = None
    updated_after: datetime | None = None
    updated_before: datetime | None = None
    shipping_type: str | None = None
    buyer_user_id: str | None = None
    warehouse_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_ranges(self) -> "OrderFilters":
        if self.created_after and self.created_before and self.created_before <= self.created_after:
            raise ValueError("created_before must be later than created_after")
        if self.updated_after and self.updated_before and self.updated_before <= self.updated_after:
            raise ValueError("updated_before must be later than updated_after")
        return self

    def to_search_body(self) -> dict[str, Any]:
        """
        Build the order search request body.

        The search API takes a single status; with several statuses the
        status filter is applied client side (see ``matches``).
        """
        body: dict[str, Any] = {}
        if len(self.status_in) == 1:
            body["order_status"] = self.status_in[0]
        if self.created_after:
            body["create_time_ge"] = to_epoch_seconds(self.created_after)
        if self.created_before:
            body["create_time_lt"] = to_epoch_seconds(self.created_before)
        if self.updated_after:
            body["update_time_ge"] = to_epoch_seconds(self.updated_after)
        if self.updated_before:
            body["update_time_lt"] = to_epoch_seconds(self.updated_before)
        if self.shipping_type:
            body["shipping_type"] = self.shipping_type
        if self.buyer_user_id:
            body["buyer_user_id"] = self.buyer_user_id
        if self.warehouse_ids:
            body["warehouse_ids"] = list(self.warehouse_ids)
        return body

    def matches(self, raw_order: dict) -> bool:
        """Client-side status filter for multi-status requests."""
        if len(self.status_in) <= 1:
            return True
        return raw_order.get("status") in self.status_in


class SyncRequest(BaseModel):
    """
    Validated sync request: ``{shop_id, org_id, filters, order_ids, page_size, sync,
    include_price_detail}``.

    Either ``order_ids`` or a created/updated lower bound in ``filters`` selects
    the orders. With ``order_ids`` the filters are ignored.
    """

    shop_id: str = Field(..., min_length=1)
    org_id: str = Field(..., min_length=1)
    filters: OrderFilters = Field(default_factory=OrderFilters)
    order_ids: list[str] = Field(default_factory=list)
    page_size: int = Field(default=50, ge=1, le=100)
    sync: bool = True
    include_price_detail: bool = False

    @field_validator("order_ids")
    @classmethod
    def strip_order_ids(cls, order_ids: list[str]) -> list[str]:
        return [order_id.strip() for order_id in order_ids if order_id.strip()]

    @model_validator(mode="after")
    def require_selection(self) -> "SyncRequest":
        if self.order_ids:
            return self
        if not self.filters.created_after and not self.filters.updated_after:
            raise ValueError(
                "order_ids, filters.created_after or filters.updated_after is required"
            )
        return self


class SyncSettings(BaseModel):
    """Tunables of a sync run, read from ``sync.*`` in app.yaml."""

    channel: str = "marketplace"
    batch_size: int = Field(default=50, ge=1)
    sort_by: str = "update_time"
    sort_direction: str = "DESC"
    request_delay_seconds: float = Field(default=0.1, ge=0)
    batch_delay_seconds: float = Field(default=0.5, ge=0)

    @classmethod
    def from_config(cls) -> "SyncSettings":
        return cls(
            channel=cfg("sync.channel", "marketplace"),
            batch_size=cfg("sync.batch_size", 50),
            sort_by=cfg("sync.sort_by", "update_time"),
            sort_direction=cfg("sync.sort_direction", "DESC"),
            request_delay_seconds=cfg("sync.request_delay_seconds", 0.1),
            batch_delay_seconds=cfg("sync.batch_delay_seconds", 0.5),
        )


def build_incremental_request(
    shop_id: str,
    org_id: str | None = None,
    lookback_days: int | None = None,
    page_size: int | None = None,
    session: Session | None = None,
) -> SyncRequest:
    """
    Build the scheduled sync request for a shop: orders updated since the last
    successful sync (with overlap), bounded by the configured lookback.
    """
    shop = get_shop_config(shop_id)
    org_id = org_id or shop.get("org_id")
    lookback_days = lookback_days or shop.get("lookback_days") or cfg("sync.lookback_days", 1)
    page_size = page_size or shop.get("page_size") or cfg("sync.page_size", 50)

    last_sync = get_last_sync_time(order_sync_domain(shop_id), session=session)
    updated_after, _ = compute_lookback_window(lookback_days=lookback_days, last_sync=last_sync)

    return SyncRequest(
        shop_id=shop_id,
        org_id=org_id,
        filters=OrderFilters(updated_after=updated_after),
        page_size=page_size,
    )


def sync_order_by_id(
    shop_id: str,
    order_id: str,
    org_id: str | None = None,
    include_price_detail: bool = True,
    **kwargs,
) -> dict[str, Any]:
    """
    Sync a single order, with its price detail by default.

    ``org_id`` falls back to the shop's configured org. Extra keyword
    arguments are passed to ``run_order_sync``.
    """
    request = SyncRequest(
        shop_id=shop_id,
        org_id=org_id or get_shop_config(shop_id).get("org_id"),
        order_ids=[order_id],
        include_price_detail=include_price_detail,
    )
    return run_order_sync(request, **kwargs)


def run_order_sync(
    request: SyncRequest | dict,
    session: Session | None = None,
    client: MarketplaceClient | None = None,
    tracking_client: TrackingServiceClient | None = None,
    settings: SyncSettings | None = None,
) -> dict[str, Any]:
    """
    Run an order sync for one shop.

    Args:
        request: SyncRequest (dicts are validated first, before any remote call)
        session: Optional database session
        client: Marketplace client (built from environment credentials if omitted)
        tracking_client: Tracking service client (built from config if omitted)
        settings: Sync tunables (read from app.yaml if omitted)

    Returns:
        Dict with ``orders_processed`` and ``pages_processed`` plus batch counters,
        or ``first_page`` (raw payload) in read-only mode

    Raises:
        pydantic.ValidationError: Invalid request
    """
    if not isinstance(request, SyncRequest):
        request = SyncRequest.model_validate(request)

    settings = settings or SyncSettings.from_config()
    if client is None:
        rate_limiter = RateLimiter("marketplace", min_delay=settings.request_delay_seconds)
        client = MarketplaceClient(
            credentials=ShopCredentials.from_env(request.shop_id), rate_limiter=rate_limiter
        )

    search_body = request.filters.to_search_body()

    if not request.sync and request.order_ids:
        logger.info(f"Read-only fetch of {len(request.order_ids)} orders for shop {request.shop_id}")
        orders = client.get_orders(request.order_ids[:MAX_ORDER_IDS_PER_REQUEST])
        return {
            "orders_processed": len(orders),
            "pages_processed": 1,
            "first_page": {"orders": orders},
        }

    if not request.sync:
        logger.info(f"Read-only order fetch for shop {request.shop_id}")
        page = client.list_orders(
            page_size=request.page_size,
            sort_by=settings.sort_by,
            sort_direction=settings.sort_direction,
            filters=search_body,
        )
        return {
            "orders_processed": len(page["orders"]),
            "pages_processed": 1,
            "first_page": page["raw"],
        }

    def _run(sess: Session) -> dict[str, Any]:
        domain = order_sync_domain(request.shop_id)
        # Only window syncs move the incremental cursor
        track_state = not request.order_ids
        started_at = utc_now()
        started = time.monotonic()
        if track_state:
            mark_sync_running(domain, session=sess)

        store = ReconciliationStore(sess)
        trigger = TrackingTrigger(store, tracking_client or TrackingServiceClient())
        detector = TrackingProblemDetector(store, client, source=settings.channel)
        processor = BatchProcessor(
            store,
            client,
            org_id=request.org_id,
            shop_id=request.shop_id,
            trigger=trigger,
            detector=detector,
            channel=settings.channel,
            include_price_detail=request.include_price_detail,
        )
        orchestrator = SyncOrchestrator(
            client,
            processor,
            rate_limiter=getattr(client, "rate_limiter", None),
            batch_size=settings.batch_size,
            batch_delay=settings.batch_delay_seconds,
            sort_by=settings.sort_by,
            sort_direction=settings.sort_direction,
        )

        if request.order_ids:
            logger.info(f"Starting sync of {len(request.order_ids)} orders by id for shop {request.shop_id}")
        else:
            logger.info(f"Starting order sync for shop {request.shop_id}: {search_body}")
        try:
            result = orchestrator.run(
                search_body,
                request.page_size,
                order_filter=None if request.order_ids else request.filters.matches,
                order_ids=request.order_ids or None,
            )
        except Exception as e:
            sess.rollback()
            if track_state:
                mark_sync_error(domain, str(e), session=sess)
            record_sync_run(request.shop_id, "error", time.monotonic() - started)
            logger.error(f"Order sync failed for shop {request.shop_id}: {e}", exc_info=True)
            raise

        summary = {
            name: result[name]
            for name in (
                "orders_fetched",
                "orders_processed",
                "pages_processed",
                "orders_inserted",
                "orders_updated",
                "tracking_states_created",
                "problem_orders",
            )
        }
        if track_state:
            mark_sync_success(domain, started_at, sync_metadata={"last_run": summary}, session=sess)
        record_sync_run(request.shop_id, "success", time.monotonic() - started)
        logger.info(f"Order sync completed for shop {request.shop_id}: {summary}")
        return result

    if session is not None:
        return _run(session)

    with get_session() as sess:
        return _run(sess)


def main():
    """CLI entry point: sync one configured shop with the default lookback."""
    if len(sys.argv) < 2:
        print("Usage: python -m ordersync.jobs.order_sync <shop_id>")
        sys.exit(2)

    try:
        stats = run_order_sync(build_incremental_request(sys.argv[1]))

        print("Order Sync Summary:")
        print(f"  Pages processed: {stats['pages_processed']}")
        print(f"  Orders processed: {stats['orders_processed']}")
        print(f"  Orders inserted: {stats['orders_inserted']}")
        print(f"  Orders updated: {stats['orders_updated']}")
        print(f"  New tracking states: {stats['tracking_states_created']}")

        sys.exit(0)

    except KeyboardInterrupt:
        logger.info("Sync job interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Sync job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
