"""
Sync state management for order sync jobs.

Keeps one row per sync domain (``orders:<shop_id>``) with the last successful
sync time, so scheduled runs only ask the marketplace for orders updated since
then (with a small overlap).
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Session

from .deps import get_session
from .models import Base

logger = logging.getLogger(__name__)


class SyncState(Base):
    """Sync state tracking for incremental sync jobs."""

    __tablename__ = "sync_state"

    domain = Column(String, primary_key=True)  # e.g. "orders:7495000000000000001"
    last_synced_at = Column(DateTime(timezone=True))
    status = Column(String, default="success")  # success, running, error
    error_count = Column(Integer, default=0)  # Consecutive error count
    error_message = Column(Text)
    sync_metadata = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_sync_state_last_synced_at", "last_synced_at"),
        Index("ix_sync_state_status", "status"),
    )


def order_sync_domain(shop_id: str) -> str:
    """Sync state key for a shop's order sync."""
    return f"orders:{shop_id}"


def get_last_sync_time(domain: str, session: Session | None = None) -> datetime | None:
    """
    Get the start time of the last successful sync for a domain.

    Returns:
        Last sync timestamp (UTC) or None if never synced successfully
    """

    def _query(sess: Session) -> datetime | None:
        state = sess.get(SyncState, domain)
        if state is None or state.last_synced_at is None:
            return None
        if state.status != "success":
            # A running/failed sync keeps the previous success time in metadata
            previous = (state.sync_metadata or {}).get("last_success_at")
            return datetime.fromisoformat(previous) if previous else None
        last = state.last_synced_at
        return last if last.tzinfo else last.replace(tzinfo=UTC)

    if session is not None:
        return _query(session)

    with get_session() as sess:
        return _query(sess)


def update_sync_state(
    domain: str,
    status: str,
    last_synced_at: datetime | None = None,
    error_message: str | None = None,
    sync_metadata: dict[str, Any] | None = None,
    session: Session | None = None,
) -> None:
    """
    Create or update the sync state row for a domain.

    Args:
        domain: Sync domain
        status: running, success or error
        last_synced_at: Start time of the successful sync (success only)
        error_message: Error message if status is error
        sync_metadata: Additional JSON metadata (sync stats, etc.)
        session: Optional database session
    """

    def _update(sess: Session) -> None:
        state = sess.get(SyncState, domain)
        if state is None:
            state = SyncState(domain=domain, error_count=0)
            sess.add(state)

        metadata = dict(state.sync_metadata or {})
        if state.status == "success" and state.last_synced_at is not None:
            metadata["last_success_at"] = state.last_synced_at.isoformat()
        if sync_metadata:
            metadata.update(sync_metadata)

        state.status = status
        state.sync_metadata = metadata
        if status == "success":
            state.last_synced_at = last_synced_at or datetime.now(UTC)
            state.error_count = 0
            state.error_message = None
        elif status == "error":
            state.error_count = (state.error_count or 0) + 1
            state.error_message = error_message

        sess.commit()
        logger.debug(f"Updated sync state for {domain}: {status}")

    if session is not None:
        _update(session)
    else:
        with get_session() as sess:
            _update(sess)


def mark_sync_running(domain: str, session: Session | None = None) -> None:
    """Mark sync as currently running."""
    update_sync_state(domain, "running", session=session)


def mark_sync_success(
    domain: str,
    started_at: datetime,
    sync_metadata: dict[str, Any] | None = None,
    session: Session | None = None,
) -> None:
    """Mark sync as successful; ``started_at`` becomes the next incremental boundary."""
    update_sync_state(
        domain, "success", last_synced_at=started_at, sync_metadata=sync_metadata, session=session
    )


def mark_sync_error(domain: str, error_message: str, session: Session | None = None) -> None:
    """Mark sync as failed with error."""
    update_sync_state(domain, "error", error_message=error_message, session=session)


def get_sync_state(domain: str, session: Session | None = None) -> SyncState | None:
    """Get full sync state for a domain."""

    def _query(sess: Session) -> SyncState | None:
        return sess.get(SyncState, domain)

    if session is not None:
        return _query(session)

    with get_session() as sess:
        return _query(sess)
