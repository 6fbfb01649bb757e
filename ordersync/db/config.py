"""
Database configuration for the ordersync service.

Loads environment variables and lazily creates the SQLAlchemy engine and
session factory, so importing the package never requires DATABASE_URL.
"""

import os

from dotenv import load_dotenv
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import sessionmaker

# Load environment variables from .env file
load_dotenv()


class DatabaseConfig:
    """Database configuration singleton."""

    _engine: Engine | None = None
    _session_factory: sessionmaker | None = None

    @classmethod
    def get_database_url(cls) -> str:
        """Get database URL from environment variables."""
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is required. "
                "Copy .env.example to .env and set your connection string."
            )
        return database_url

    @classmethod
    def get_engine(cls) -> Engine:
        """Get SQLAlchemy engine (singleton)."""
        if cls._engine is None:
            database_url = cls.get_database_url()
            options = {"pool_pre_ping": True, "echo": False}
            if not database_url.startswith("sqlite"):
                options.update(pool_size=10, max_overflow=20)
            cls._engine = create_engine(database_url, **options)
        return cls._engine

    @classmethod
    def get_session_factory(cls) -> sessionmaker:
        """Get session factory."""
        if cls._session_factory is None:
            cls._session_factory = sessionmaker(
                bind=cls.get_engine(),
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
            )
        return cls._session_factory

    @classmethod
    def reset(cls) -> None:
        """Dispose the engine and forget the factory (used on shutdown)."""
        if cls._engine is not None:
            cls._engine.dispose()
        cls._engine = None
        cls._session_factory = None
