"""
Prometheus metrics for the ordersync service.

Metrics live in a dedicated registry and are exposed by
``start_metrics_server`` on ``observability.metrics_port``.
"""

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry()

SYNC_RUNS = Counter(
    "sync_runs_total", "Total number of order sync runs", ["shop", "status"], registry=REGISTRY
)

SYNC_DURATION = Histogram(
    "sync_duration_seconds", "Order sync duration in seconds", ["shop"], registry=REGISTRY
)

RECORDS_WRITTEN = Counter(
    "records_written_total",
    "Total number of rows written by the reconciliation store",
    ["table", "operation"],
    registry=REGISTRY,
)

UPSTREAM_FAILURES = Counter(
    "upstream_failures_total",
    "Marketplace and tracking service calls that failed after retries",
    ["call"],
    registry=REGISTRY,
)

PROBLEM_ORDERS_FLAGGED = Counter(
    "problem_orders_flagged_total",
    "Orders newly flagged as problem in transit",
    registry=REGISTRY,
)

SCHEDULER_RUNNING = Gauge(
    "scheduler_running", "Whether the scheduler is running", registry=REGISTRY
)


def record_rows(table: str, operation: str, count: int) -> None:
    """Count rows written to a table (operation: insert, update, delete)."""
    if count:
        RECORDS_WRITTEN.labels(table=table, operation=operation).inc(count)


def record_sync_run(shop_id: str, status: str, duration_seconds: float | None = None) -> None:
    SYNC_RUNS.labels(shop=shop_id, status=status).inc()
    if duration_seconds is not None:
        SYNC_DURATION.labels(shop=shop_id).observe(duration_seconds)


def set_scheduler_running(running: bool) -> None:
    SCHEDULER_RUNNING.set(1 if running else 0)


def start_metrics_server(port: int) -> None:
    """Expose the registry over HTTP on a background thread."""
    start_http_server(port, registry=REGISTRY)
    logger.info(f"Metrics server listening on port {port}")
