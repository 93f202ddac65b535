"""Pytest configuration for shopsync tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Ensures consistent test setup, database isolation, and fake Shopify clients
REFERENCES:
    - shopsync/main.py: FastAPI application
    - shopsync/database.py: Database configuration
    - shopsync/services/shopify_sync_service.py: Sync service under test
"""

import pytest
import os
from datetime import datetime, timedelta
from typing import Generator

from sqlalchemy.orm import Session
from fastapi.testclient import TestClient

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (before any shopsync import creates the engine)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)


FIXED_NOW = datetime(2026, 3, 15, 12, 0, 0)


class FakeClock:
    """Deterministic UTC clock; `step` advances it on every read."""

    def __init__(self, now: datetime = FIXED_NOW, step: timedelta = timedelta(0)):
        self.now = now
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite engine shared by every session (StaticPool)."""
    from shopsync.database import Base, engine

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    from shopsync.database import SessionLocal

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_store(test_db_session):
    from shopsync.models import Store

    store = Store(
        shop_domain="test-store.myshopify.com",
        access_token="shpat_test",
        name="Test Store",
        currency="USD",
    )
    test_db_session.add(store)
    test_db_session.commit()
    test_db_session.refresh(store)
    return store


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    """Settings with no call spacing so tests run instantly."""
    from shopsync.deps import Settings

    return Settings(
        SYNC_CALL_SPACING_SECONDS=0,
        SYNC_MAX_WORKERS=3,
        SYNC_BATCH_SIZE=100,
        SYNC_WALL_CLOCK_BUDGET_SECONDS=600,
        REFUND_BACKFILL_DELAY_SECONDS=0.3,
    )


@pytest.fixture
def recorded_sleeps():
    return []


@pytest.fixture
def make_service(test_settings, fake_clock, recorded_sleeps):
    """Build a ShopifySyncService around a fake client."""
    from shopsync.services.shopify_sync_service import ShopifySyncService

    async def _fake_sleep(seconds):
        recorded_sleeps.append(seconds)

    def _make(client, settings=None, clock=None):
        return ShopifySyncService(
            settings=settings or test_settings,
            client_factory=lambda store: client,
            clock=clock or fake_clock,
            sleep=_fake_sleep,
        )

    return _make


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """Create FastAPI test application."""
    from shopsync.main import create_app
    from shopsync.database import get_db

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)
