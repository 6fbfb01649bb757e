"""
Time window utilities for sync jobs.

Provides helpers for computing lookback windows and converting between
datetimes and the epoch-second timestamps the marketplace API filters on.
"""

import logging
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def align_to_minute(dt: datetime) -> datetime:
    """Align datetime to minute boundary (zero out seconds/microseconds)."""
    return dt.replace(second=0, microsecond=0)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_epoch_seconds(dt: datetime) -> int:
    """Convert a datetime to unix seconds (naive values are taken as UTC)."""
    return int(ensure_utc(dt).timestamp())


def compute_lookback_window(
    lookback_days: int | None = None,
    lookback_hours: int | None = None,
    last_sync: datetime | None = None,
    overlap_minutes: int = 5,
) -> tuple[datetime, datetime]:
    """
    Compute time window for incremental sync.

    Args:
        lookback_days: Days to look back from now
        lookback_hours: Hours to look back from now (wins over days)
        last_sync: Last successful sync timestamp
        overlap_minutes: Overlap subtracted from last_sync

    Returns:
        Tuple of (from_time, to_time) in UTC

    Notes:
        - A recent last_sync (minus the overlap) is used as from_time
        - It is never older than the configured lookback
    """
    now = align_to_minute(utc_now())

    if lookback_hours:
        max_lookback = now - timedelta(hours=lookback_hours)
    elif lookback_days:
        max_lookback = now - timedelta(days=lookback_days)
    else:
        max_lookback = now - timedelta(hours=24)

    from_time = max_lookback
    if last_sync is not None:
        from_time = ensure_utc(last_sync) - timedelta(minutes=overlap_minutes)
        if from_time < max_lookback:
            logger.info(f"Last sync ({last_sync}) is older than max lookback, using {max_lookback}")
            from_time = max_lookback

    from_time = align_to_minute(from_time)
    logger.debug(f"Computed time window: {from_time} to {now}")
    return from_time, now


def format_duration(duration: timedelta) -> str:
    """Compact two-unit duration for log lines, e.g. ``45s``, ``3m12s``, ``2h5m``, ``1d4h``."""
    seconds = max(int(duration.total_seconds()), 0)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)

    if days:
        return f"{days}d{hours}h"
    if hours:
        return f"{hours}h{minutes}m"
    if minutes:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"
