#!/usr/bin/env python3
"""
ordersync service

Runs incremental marketplace order syncs for every shop listed in
config/app.yaml on an APScheduler interval, one job per shop, and exposes
Prometheus metrics. ``--run SHOP_ID`` performs a single sync and exits.
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import timedelta
from typing import Callable, Optional

import structlog
from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobEvent,
    JobExecutionEvent,
)
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ordersync.config.loader import cfg, get_shops, load_config, validate_config
from ordersync.db.config import DatabaseConfig
from ordersync.jobs.order_sync import OrderFilters, build_incremental_request, run_order_sync
from ordersync.observability import set_scheduler_running, start_metrics_server
from ordersync.utils.time_windows import format_duration, utc_now

logger = logging.getLogger(__name__)

# Set by the signal handler, watched by the scheduler loop
shutdown_requested = threading.Event()


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Route stdlib logging to stdout, rendered as JSON by structlog or as plain text."""
    timestamper = structlog.processors.TimeStamper(fmt="iso")
    shared_processors = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        timestamper,
    ]

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                *shared_processors,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    structlog.processors.JSONRenderer(),
                ],
                foreign_pre_chain=shared_processors,
            )
        )
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # APScheduler logs every run at INFO; the job listener covers that
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def sync_shop_job(shop_id: str) -> Callable[[], None]:
    """Scheduled job body for one shop. Failures are logged; the schedule keeps running."""

    def job() -> None:
        started = utc_now()
        try:
            result = run_order_sync(build_incremental_request(shop_id))
        except Exception as e:
            logger.error(
                f"Scheduled sync for shop {shop_id} failed after "
                f"{format_duration(utc_now() - started)}: {e}",
                exc_info=True,
            )
            return

        logger.info(
            f"Scheduled sync for shop {shop_id} took {format_duration(utc_now() - started)}: "
            f"{result['orders_processed']} orders over {result['pages_processed']} pages, "
            f"{result['tracking_states_created']} new tracking states"
        )

    return job


def on_job_event(event: JobEvent) -> None:
    if event.code == EVENT_JOB_MISSED:
        logger.warning(f"Job {event.job_id} missed its run time")
    elif isinstance(event, JobExecutionEvent) and event.exception:
        logger.error(f"Job {event.job_id} raised: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} finished")


def build_scheduler() -> BackgroundScheduler:
    """
    Create the scheduler with one interval job per configured shop.

    First runs are spread ``scheduler.stagger_minutes`` apart so shops do not
    hit the marketplace together; ``max_instances=1`` keeps syncs of the same
    shop from overlapping.
    """
    scheduler = BackgroundScheduler(
        timezone=cfg("global.timezone", "UTC"),
        job_defaults=cfg(
            "scheduler.job_defaults",
            {"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
        ),
    )
    scheduler.add_listener(on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    default_interval = cfg("scheduler.interval_minutes", 60)
    stagger = timedelta(minutes=cfg("scheduler.stagger_minutes", 2))
    first_run = utc_now() + timedelta(minutes=1)

    for position, shop in enumerate(get_shops()):
        shop_id = str(shop["shop_id"])
        interval = shop.get("interval_minutes", default_interval)
        start_date = first_run + position * stagger
        scheduler.add_job(
            sync_shop_job(shop_id),
            IntervalTrigger(minutes=interval, start_date=start_date),
            id=f"orders_{shop_id}",
            name=f"Order sync {shop_id}",
            max_instances=1,
            replace_existing=True,
        )
        logger.info(f"Shop {shop_id}: order sync every {interval} min, first run {start_date:%H:%M} UTC")

    return scheduler


def run_once(
    shop_id: str,
    days: Optional[int],
    page_size: Optional[int],
    dry_run: bool,
    order_ids: Optional[list[str]] = None,
    price_detail: bool = False,
) -> int:
    """Sync one shop (or only the given orders of it) and return the process exit code."""
    try:
        request = build_incremental_request(shop_id, lookback_days=days, page_size=page_size)
    except Exception as e:
        logger.error(f"Cannot build sync request for shop {shop_id}: {e}")
        return 1

    updates = {"sync": not dry_run, "include_price_detail": price_detail}
    if order_ids:
        updates["order_ids"] = order_ids
    elif days:
        # An explicit --days window ignores the stored last sync time
        updates["filters"] = OrderFilters(updated_after=utc_now() - timedelta(days=days))
    request = request.model_copy(update=updates)

    try:
        result = run_order_sync(request)
    except Exception as e:
        logger.error(f"Sync for shop {shop_id} failed: {e}", exc_info=True)
        return 1

    if dry_run:
        logger.info(f"Dry run: first page holds {result['orders_processed']} orders, nothing written")
    else:
        logger.info(
            f"Sync for shop {shop_id} done: {result['orders_processed']} orders, "
            f"{result['pages_processed']} pages, {result['orders_inserted']} new, "
            f"{result['orders_updated']} updated"
        )
    return 0


def run_scheduler() -> int:
    """Run scheduled syncs until SIGTERM or SIGINT."""
    scheduler = build_scheduler()
    if not scheduler.get_jobs():
        logger.warning("No shops configured under 'shops' in the configuration file")
        return 1

    start_metrics_server(cfg("observability.metrics_port", 9108))

    def request_shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown_requested.set()

    signal.signal(signal.SIGTERM, request_shutdown)
    signal.signal(signal.SIGINT, request_shutdown)

    scheduler.start()
    set_scheduler_running(True)
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} shop jobs")

    try:
        shutdown_requested.wait()
    finally:
        set_scheduler_running(False)
        # Lets a running sync finish and record its sync state
        scheduler.shutdown(wait=True)
        DatabaseConfig.reset()
        logger.info("Shutdown complete")

    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Marketplace order sync service")
    parser.add_argument("--config", default="config/app.yaml", help="Configuration file path")
    parser.add_argument("--validate-config", action="store_true", help="Validate configuration and exit")
    parser.add_argument("--run", metavar="SHOP_ID", help="Sync one shop once and exit")
    parser.add_argument("--days", type=int, help="With --run: orders updated in the last N days")
    parser.add_argument("--page-size", type=int, help="With --run: orders per page (1-100)")
    parser.add_argument("--dry-run", action="store_true", help="With --run: fetch the first page only")
    parser.add_argument(
        "--order-id", action="append", dest="order_ids", metavar="ORDER_ID",
        help="With --run: sync only this order (repeatable)",
    )
    parser.add_argument(
        "--price-detail", action="store_true", help="With --run: also fetch order price details"
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    # Logging settings live in the config file, so load it first
    load_config(args.config)
    setup_logging(cfg("global.log_level", "INFO"), cfg("global.log_format", "json"))

    try:
        validate_config()
    except ValueError as e:
        logger.error(str(e))
        return 1

    if args.validate_config:
        logger.info("Configuration is valid")
        return 0

    if args.run:
        return run_once(
            args.run, args.days, args.page_size, args.dry_run, args.order_ids, args.price_detail
        )

    return run_scheduler()


if __name__ == "__main__":
    sys.exit(main())
