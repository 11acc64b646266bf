"""Database engine and session configuration.

WHAT:
    Builds the sync SQLAlchemy engine from DATABASE_URL and exposes the
    session factory the storage adapter uses.

WHY:
    The sync engine runs its storage calls in worker threads
    (`asyncio.to_thread`), each with its own short-lived session. A plain
    sync engine keeps that simple and works with both PostgreSQL and SQLite.

USAGE:
    from adsync.database import SessionLocal, init_db

REFERENCES:
    - adsync/services/storage.py (SqlPerformanceStore)
"""

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from adsync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# SQLite engines (tests/dev) do not support pool_size/max_overflow, and are
# shared across the threads the storage adapter runs in.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,        # Concurrent chunk inserts need headroom
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

from .models import Base  # noqa: E402


def init_db() -> None:
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine)
