"""
Database dependency management for the ordersync service.

Provides context managers for database session handling.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from .config import DatabaseConfig


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager that yields a database session and ensures proper cleanup.

    Automatically handles:
    - Session creation
    - Transaction commit on success
    - Rollback on exception
    - Session cleanup

    Note that the reconciliation store commits after every collection write,
    so a rollback here only discards the writes since the last store commit.

    Usage:
        with get_session() as session:
            store = ReconciliationStore(session)
            ...
    """
    session = DatabaseConfig.get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
