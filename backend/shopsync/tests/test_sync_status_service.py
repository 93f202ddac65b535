"""Tests for the liveness monitor, status report and start/stop."""

import asyncio
from datetime import timedelta
from decimal import Decimal

from shopsync.models import ShopifyOrder, SyncDataTypeEnum, SyncStatus
from shopsync.services.shopify_client import RateLimitedError, TransientError
from shopsync.services.sync.status_ledger import GHOST_SYNC_ERROR, SyncStatusLedger
from shopsync.services.sync_status_service import (
    START_ACCEPTED,
    START_ALREADY_IN_PROGRESS,
    START_RATE_LIMITED,
    calculate_progress,
    find_ghosts,
    get_status,
    parse_timeframe,
    reap_ghosts,
    reap_stuck_complete,
    resume_stuck_syncs,
    start_sync,
    stop_sync,
)


class _CountingClient:
    """Only count_orders is needed by the monitor."""

    def __init__(self, total=0, error=None):
        self.total = total
        self.error = error
        self.count_calls = 0

    async def count_orders(self, created_at_min=None, created_at_max=None):
        self.count_calls += 1
        if self.error:
            raise self.error
        return self.total


def _running_entry(db, store, heartbeat, timeframe_days=30, data_type=SyncDataTypeEnum.orders):
    entry = SyncStatus(
        store_id=store.id,
        data_type=data_type,
        sync_in_progress=True,
        last_heartbeat=heartbeat,
        timeframe_days=timeframe_days,
    )
    db.add(entry)
    db.commit()
    return entry


def _add_orders(db, store, count, created_at):
    for i in range(count):
        db.add(ShopifyOrder(
            store_id=store.id,
            external_order_id=f"local-{i}",
            name=f"#{2000 + i}",
            total_price=Decimal("10.00"),
            order_created_at=created_at,
        ))
    db.commit()


# ============================================================================
# Helpers
# ============================================================================

def test_parse_timeframe():
    assert parse_timeframe("7d") == 7
    assert parse_timeframe("90d") == 90
    assert parse_timeframe("1y") == 365
    assert parse_timeframe(None) == 30
    assert parse_timeframe("forever") == 30


def test_calculate_progress():
    assert calculate_progress(3, 10) == 30.0
    assert calculate_progress(0, 0) == 100.0
    assert calculate_progress(12, 10) == 100.0
    assert calculate_progress(1, 3) == 33.33
    assert calculate_progress(5, None) is None


# ============================================================================
# Ghost reaping
# ============================================================================

def test_stale_heartbeat_is_reaped(test_db_session, test_store, fake_clock):
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=20))

    result = reap_ghosts(test_db_session, stale_minutes=15, now=fake_clock.now)

    assert result.cleaned_count == 1
    assert result.details[0]["reason"] == "stale heartbeat"
    assert result.details[0]["minutes_stuck"] == 20.0

    entry = SyncStatusLedger(test_db_session).get(test_store.id, SyncDataTypeEnum.orders)
    assert entry.sync_in_progress is False
    assert entry.error_message == GHOST_SYNC_ERROR


def test_fresh_heartbeat_is_left_alone(test_db_session, test_store, fake_clock):
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=5))

    assert find_ghosts(test_db_session, stale_minutes=15, now=fake_clock.now) == []
    result = reap_ghosts(test_db_session, stale_minutes=15, now=fake_clock.now)

    assert result.cleaned_count == 0
    entry = SyncStatusLedger(test_db_session).get(test_store.id, SyncDataTypeEnum.orders)
    assert entry.sync_in_progress is True


def test_missing_heartbeat_is_reaped(test_db_session, test_store, fake_clock):
    _running_entry(test_db_session, test_store, heartbeat=None, data_type=SyncDataTypeEnum.products)

    result = reap_ghosts(test_db_session, now=fake_clock.now)

    assert result.cleaned_count == 1
    assert result.details[0]["reason"] == "no heartbeat"
    assert result.details[0]["data_type"] == "products"


# ============================================================================
# Stuck-complete reaping
# ============================================================================

def test_stuck_complete_sync_is_closed(test_db_session, test_store, make_service, fake_clock):
    _add_orders(test_db_session, test_store, 2, created_at=fake_clock.now - timedelta(days=1))
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=10))
    service = make_service(_CountingClient(total=2))

    result = asyncio.run(reap_stuck_complete(test_db_session, service, now=fake_clock.now))

    assert result.cleaned_count == 1
    assert result.details[0]["reason"] == "all orders synced"
    entry = SyncStatusLedger(test_db_session).get(test_store.id, SyncDataTypeEnum.orders)
    assert entry.sync_in_progress is False
    assert entry.error_message is None
    assert entry.last_sync_at == fake_clock.now


def test_recently_renewed_sync_is_not_closed(test_db_session, test_store, make_service, fake_clock):
    _add_orders(test_db_session, test_store, 2, created_at=fake_clock.now - timedelta(days=1))
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=1))
    client = _CountingClient(total=2)
    service = make_service(client)

    result = asyncio.run(reap_stuck_complete(test_db_session, service, now=fake_clock.now))

    assert result.cleaned_count == 0
    assert client.count_calls == 0
    assert SyncStatusLedger(test_db_session).is_running(test_store.id, SyncDataTypeEnum.orders)


def test_unfinished_sync_is_not_closed(test_db_session, test_store, make_service, fake_clock):
    _add_orders(test_db_session, test_store, 2, created_at=fake_clock.now - timedelta(days=1))
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=10))
    service = make_service(_CountingClient(total=5))

    result = asyncio.run(reap_stuck_complete(test_db_session, service, now=fake_clock.now))

    assert result.cleaned_count == 0
    assert SyncStatusLedger(test_db_session).is_running(test_store.id, SyncDataTypeEnum.orders)


def test_remote_failure_skips_stuck_complete_check(test_db_session, test_store, make_service, fake_clock):
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=10))
    service = make_service(_CountingClient(error=TransientError("Shopify API request failed after 3 attempts")))

    result = asyncio.run(reap_stuck_complete(test_db_session, service, now=fake_clock.now))

    assert result.cleaned_count == 0
    assert SyncStatusLedger(test_db_session).is_running(test_store.id, SyncDataTypeEnum.orders)


# ============================================================================
# Status report
# ============================================================================

def test_status_reports_progress(test_db_session, test_store, make_service, fake_clock):
    _add_orders(test_db_session, test_store, 3, created_at=fake_clock.now - timedelta(days=2))
    service = make_service(_CountingClient(total=10))

    report = asyncio.run(get_status(test_db_session, service, test_store.id, timeframe="30d", now=fake_clock.now))

    assert report.timeframe_days == 30
    assert report.orders_synced == 3
    assert report.orders_total == 10
    assert report.progress_pct == 30.0
    assert report.remaining == 7
    assert report.is_needed is True
    assert report.is_active is False


def test_status_reaps_ghost_on_read(test_db_session, test_store, make_service, fake_clock):
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=20))
    service = make_service(_CountingClient(total=10))

    report = asyncio.run(get_status(test_db_session, service, test_store.id, now=fake_clock.now))

    assert report.is_active is False
    assert report.error_message == GHOST_SYNC_ERROR


def test_status_uses_running_sync_timeframe(test_db_session, test_store, make_service, fake_clock):
    _add_orders(test_db_session, test_store, 1, created_at=fake_clock.now - timedelta(days=60))
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now, timeframe_days=90)
    service = make_service(_CountingClient(total=4))

    report = asyncio.run(get_status(test_db_session, service, test_store.id, timeframe="7d", now=fake_clock.now))

    assert report.is_active is True
    assert report.timeframe_days == 90
    assert report.orders_synced == 1


def test_status_read_leaves_live_resync_running(test_db_session, test_store, make_service, fake_clock):
    _add_orders(test_db_session, test_store, 3, created_at=fake_clock.now - timedelta(days=2))
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now)
    service = make_service(_CountingClient(total=3))

    report = asyncio.run(get_status(test_db_session, service, test_store.id, now=fake_clock.now))

    assert report.is_active is False
    assert report.progress_pct == 100.0
    assert SyncStatusLedger(test_db_session).is_running(test_store.id, SyncDataTypeEnum.orders)


def test_status_without_remote_count(test_db_session, test_store, make_service, fake_clock):
    _add_orders(test_db_session, test_store, 2, created_at=fake_clock.now - timedelta(days=2))
    service = make_service(_CountingClient(error=RateLimitedError("throttled", status_code=429)))

    report = asyncio.run(get_status(test_db_session, service, test_store.id, now=fake_clock.now))

    assert report.orders_synced == 2
    assert report.orders_total is None
    assert report.progress_pct is None
    assert report.remaining is None
    assert report.is_needed is False


# ============================================================================
# Start / stop
# ============================================================================

def test_start_sync_claims_lease_once(test_db_session, test_store, make_service):
    service = make_service(_CountingClient())

    first = start_sync(test_db_session, service, test_store.id, timeframe_days=90)
    second = start_sync(test_db_session, service, test_store.id, timeframe_days=90)

    assert first.status == START_ACCEPTED
    assert second.status == START_ALREADY_IN_PROGRESS
    entry = SyncStatusLedger(test_db_session).get(test_store.id, SyncDataTypeEnum.orders)
    assert entry.timeframe_days == 90


def test_start_sync_refused_while_breaker_open(test_db_session, test_store, make_service):
    service = make_service(_CountingClient())
    for _ in range(3):
        service.breaker.record_failure(RateLimitedError("throttled", status_code=429))

    result = start_sync(test_db_session, service, test_store.id)

    assert result.status == START_RATE_LIMITED
    assert result.message == "rate limited, cooling down, retry in 10m"
    assert result.retry_after_seconds == 600
    assert SyncStatusLedger(test_db_session).get(test_store.id, SyncDataTypeEnum.orders) is None


def test_stop_sync(test_db_session, test_store, make_service):
    service = make_service(_CountingClient())
    assert stop_sync(test_db_session, test_store.id) is False

    start_sync(test_db_session, service, test_store.id)
    assert stop_sync(test_db_session, test_store.id) is True

    entry = SyncStatusLedger(test_db_session).get(test_store.id, SyncDataTypeEnum.orders)
    assert entry.sync_in_progress is False
    assert entry.error_message == "sync stopped by user"


# ============================================================================
# Resume
# ============================================================================

def test_resume_claims_dead_order_sync_with_its_timeframe(test_db_session, test_store, make_service, fake_clock):
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=30), timeframe_days=90)
    _running_entry(test_db_session, test_store, heartbeat=None, data_type=SyncDataTypeEnum.products)
    service = make_service(_CountingClient())

    result = resume_stuck_syncs(test_db_session, service, stale_minutes=15, now=fake_clock.now)

    assert result.cleaned_count == 2
    assert result.resumed == [{
        "store_id": str(test_store.id),
        "timeframe_days": 90,
        "status": START_ACCEPTED,
        "message": "Order sync started for the last 90 days",
    }]
    ledger = SyncStatusLedger(test_db_session)
    assert ledger.is_running(test_store.id, SyncDataTypeEnum.orders)
    assert not ledger.is_running(test_store.id, SyncDataTypeEnum.products)


def test_resume_leaves_live_sync_alone(test_db_session, test_store, make_service, fake_clock):
    _running_entry(test_db_session, test_store, heartbeat=fake_clock.now - timedelta(minutes=2))
    service = make_service(_CountingClient())

    result = resume_stuck_syncs(test_db_session, service, stale_minutes=15, now=fake_clock.now)

    assert result.cleaned_count == 0
    assert result.resumed == []
