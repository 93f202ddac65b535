"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory for the local mirror
    and exposes a FastAPI dependency for database access.

WHY:
    - Routers use `get_db()` through dependency injection
    - Background jobs (arq worker, FastAPI background tasks) open their own
      session with `get_sync_session()` because the request session is closed
      by the time the job runs

USAGE:
    from shopsync.database import SessionLocal, get_db, get_sync_session

    with get_sync_session() as db:
        stores = db.query(Store).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - shopsync/services/shipping_costs.py (separate engine for shipping data)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


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
        from shopsync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


def build_engine(database_url: str):
    """Create an engine with pool settings appropriate for the backend.

    SQLite engines (tests/dev) do not support pool_size/max_overflow. In-memory
    SQLite shares one connection so every session sees the same database.
    """
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


DATABASE_URL = _get_database_url()

engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in shopsync.models to ensure a single registry across the app
from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, background tasks).

    Example:
        with get_sync_session() as db:
            orders = db.query(ShopifyOrder).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
