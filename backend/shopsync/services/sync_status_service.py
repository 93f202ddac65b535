"""Sync status and liveness monitor.

WHAT:
    - Reaps ghost syncs (in progress, heartbeat missing or stale)
    - Reaps stuck-complete syncs (in progress, but every remote order in the
      window is already mirrored)
    - Builds the status report shown to users (progress, remaining, is_needed)
    - Starts and stops order syncs with the best-effort "already running" check
    - Resumes order syncs whose worker died, with the window they were started with

WHY:
    Worker processes die (deploys, OOM, crashes) without clearing
    `sync_in_progress`. Without the reaper a dead run would block new syncs
    forever and the UI would show "syncing..." indefinitely. Reaping runs both
    from the arq cron and inline on every status read, so a user never looks at
    a ghost.

REFERENCES:
    - shopsync/services/sync/status_ledger.py (state transitions)
    - shopsync/services/shopify_sync_service.py (the lease owner)
    - shopsync/workers/arq_worker.py (cron reaper)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from shopsync.models import ShopifyOrder, Store, SyncDataTypeEnum, SyncStatus
from shopsync.services.shopify_client import ShopifyAPIError
from shopsync.services.sync.circuit_breaker import CircuitOpenError
from shopsync.services.sync.status_ledger import SyncStatusLedger

logger = logging.getLogger(__name__)

DEFAULT_STALE_MINUTES = 15
# A run that renewed its lease this recently is alive, even if every order is already mirrored
STUCK_COMPLETE_GRACE_MINUTES = 5
DEFAULT_TIMEFRAME_DAYS = 30

TIMEFRAME_DAYS = {
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "1y": 365,
}

REASON_NO_HEARTBEAT = "no heartbeat"
REASON_STALE_HEARTBEAT = "stale heartbeat"
REASON_STUCK_COMPLETE = "all orders synced"

START_ACCEPTED = "accepted"
START_ALREADY_IN_PROGRESS = "already_in_progress"
START_RATE_LIMITED = "rate_limited"


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class ReapResult:
    cleaned_count: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ResumeResult:
    """Ghosts reaped, plus the order syncs claimed again for the caller to run."""
    cleaned_count: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)
    resumed: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SyncStatusReport:
    """What the status endpoint returns for one store's order sync."""
    timeframe_days: int
    orders_synced: int
    orders_total: Optional[int]
    progress_pct: Optional[float]
    remaining: Optional[int]
    is_active: bool
    is_needed: bool
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass
class StartSyncResult:
    status: str
    message: str
    retry_after_seconds: Optional[float] = None


# =============================================================================
# HELPERS
# =============================================================================

def parse_timeframe(timeframe: Optional[str]) -> int:
    """Map a UI timeframe ("7d", "30d", "90d", "1y") to days. Unknown values fall back to 30."""
    if not timeframe:
        return DEFAULT_TIMEFRAME_DAYS
    return TIMEFRAME_DAYS.get(timeframe.strip().lower(), DEFAULT_TIMEFRAME_DAYS)


def calculate_progress(synced: int, total: Optional[int]) -> Optional[float]:
    """Percent of the remote window mirrored locally, 2 dp. An empty window counts as complete."""
    if total is None:
        return None
    if total <= 0:
        return 100.0
    return round(min(synced, total) / total * 100, 2)


def count_local_orders(db: Session, store_id: UUID, window_start: datetime) -> int:
    return db.query(func.count(ShopifyOrder.id)).filter(
        ShopifyOrder.store_id == store_id,
        ShopifyOrder.order_created_at >= window_start,
    ).scalar() or 0


# =============================================================================
# REAPER
# =============================================================================

def find_ghosts(
    db: Session,
    stale_minutes: int = DEFAULT_STALE_MINUTES,
    now: Optional[datetime] = None,
    store_id: Optional[UUID] = None,
) -> List[Dict[str, Any]]:
    """List in-progress entries whose owner looks dead, without modifying them."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=stale_minutes)

    query = db.query(SyncStatus).filter(SyncStatus.sync_in_progress.is_(True))
    if store_id is not None:
        query = query.filter(SyncStatus.store_id == store_id)

    ghosts = []
    for entry in query.all():
        if entry.last_heartbeat is None:
            reason = REASON_NO_HEARTBEAT
            since = entry.updated_at or now
        elif entry.last_heartbeat < cutoff:
            reason = REASON_STALE_HEARTBEAT
            since = entry.last_heartbeat
        else:
            continue

        ghosts.append({
            "entry": entry,
            "store_id": str(entry.store_id),
            "data_type": entry.data_type.value,
            "minutes_stuck": round((now - since).total_seconds() / 60, 1),
            "reason": reason,
        })
    return ghosts


def reap_ghosts(
    db: Session,
    stale_minutes: int = DEFAULT_STALE_MINUTES,
    now: Optional[datetime] = None,
    store_id: Optional[UUID] = None,
) -> ReapResult:
    """Move every ghost sync to Idle-with-error ("auto-completed ghost sync").

    Parameters:
        db: Database session
        stale_minutes: Heartbeat age after which a run is considered dead
        now: Current UTC time (tests pass a fixed value)
        store_id: Limit to one store (status reads); None reaps everything (cron)

    Returns:
        ReapResult with one detail per reaped entry
    """
    ledger = SyncStatusLedger(db, clock=lambda: now or datetime.utcnow())
    result = ReapResult()

    for ghost in find_ghosts(db, stale_minutes=stale_minutes, now=now, store_id=store_id):
        entry = ghost.pop("entry")
        ledger.mark_ghost(entry)
        result.cleaned_count += 1
        result.details.append(ghost)
        logger.warning(
            f"[SYNC_STATUS] Reaped ghost {ghost['data_type']} sync for store {ghost['store_id']} "
            f"({ghost['reason']}, stuck {ghost['minutes_stuck']}m)"
        )

    if result.cleaned_count:
        logger.info(f"[SYNC_STATUS] Cleaned {result.cleaned_count} ghost syncs")
    return result


async def reap_stuck_complete(
    db: Session,
    service: Any,
    store_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
    grace_minutes: int = STUCK_COMPLETE_GRACE_MINUTES,
) -> ReapResult:
    """Close running order syncs whose window is already fully mirrored.

    Compares the local count in the declared window with the remote count. Only
    entries whose heartbeat is older than `grace_minutes` are considered: a
    re-sync of an already mirrored window is complete by count from its first
    batch but still has status updates to write. A remote failure leaves the
    entry alone.
    """
    now = now or datetime.utcnow()
    grace_cutoff = now - timedelta(minutes=grace_minutes)
    ledger = SyncStatusLedger(db, clock=lambda: now)
    result = ReapResult()

    query = db.query(SyncStatus).filter(
        SyncStatus.sync_in_progress.is_(True),
        SyncStatus.data_type == SyncDataTypeEnum.orders,
    )
    if store_id is not None:
        query = query.filter(SyncStatus.store_id == store_id)

    for entry in query.all():
        if entry.last_heartbeat is not None and entry.last_heartbeat >= grace_cutoff:
            continue

        store = db.query(Store).filter(Store.id == entry.store_id).first()
        if store is None:
            continue

        timeframe_days = entry.timeframe_days or DEFAULT_TIMEFRAME_DAYS
        window_start = now - timedelta(days=timeframe_days)
        try:
            remote_total = await service.call(
                service.client_factory(store).count_orders,
                created_at_min=window_start,
                created_at_max=now,
            )
        except (ShopifyAPIError, CircuitOpenError) as e:
            logger.warning(f"[SYNC_STATUS] Could not count remote orders for store {store.id}: {e}")
            continue

        local_total = count_local_orders(db, store.id, window_start)
        if local_total >= remote_total:
            ledger.mark_stuck_complete(entry)
            result.cleaned_count += 1
            result.details.append({
                "store_id": str(store.id),
                "data_type": SyncDataTypeEnum.orders.value,
                "minutes_stuck": round((now - (entry.last_heartbeat or now)).total_seconds() / 60, 1),
                "reason": REASON_STUCK_COMPLETE,
            })
            logger.info(
                f"[SYNC_STATUS] Closed stuck-complete order sync for store {store.id} "
                f"({local_total}/{remote_total} orders mirrored)"
            )

    return result


# =============================================================================
# STATUS
# =============================================================================

async def get_status(
    db: Session,
    service: Any,
    store_id: UUID,
    timeframe: Optional[str] = None,
    stale_minutes: int = DEFAULT_STALE_MINUTES,
    now: Optional[datetime] = None,
) -> SyncStatusReport:
    """Build the order sync status report, repairing ghost and stuck-complete entries first.

    While a sync is running its declared timeframe wins over the requested one,
    so progress is measured against the window actually being synced. A running
    sync whose window is already fully mirrored is reported as not active; the
    lease itself is left to its owner.
    """
    now = now or datetime.utcnow()

    reap_ghosts(db, stale_minutes=stale_minutes, now=now, store_id=store_id)
    await reap_stuck_complete(db, service, store_id=store_id, now=now)

    ledger = SyncStatusLedger(db)
    entry = ledger.refresh(store_id, SyncDataTypeEnum.orders)
    running = bool(entry and entry.sync_in_progress)

    timeframe_days = parse_timeframe(timeframe)
    if running and entry.timeframe_days:
        timeframe_days = entry.timeframe_days

    window_start = now - timedelta(days=timeframe_days)
    orders_synced = count_local_orders(db, store_id, window_start)

    orders_total: Optional[int] = None
    store = db.query(Store).filter(Store.id == store_id).first()
    if store is not None:
        try:
            orders_total = await service.call(
                service.client_factory(store).count_orders,
                created_at_min=window_start,
                created_at_max=now,
            )
        except (ShopifyAPIError, CircuitOpenError) as e:
            logger.warning(f"[SYNC_STATUS] Remote order count unavailable for store {store_id}: {e}")

    remaining = max(0, orders_total - orders_synced) if orders_total is not None else None
    is_complete = orders_total is not None and orders_synced >= orders_total
    return SyncStatusReport(
        timeframe_days=timeframe_days,
        orders_synced=orders_synced,
        orders_total=orders_total,
        progress_pct=calculate_progress(orders_synced, orders_total),
        remaining=remaining,
        is_active=running and not is_complete,
        is_needed=orders_total is not None and orders_synced < orders_total,
        last_sync_at=entry.last_sync_at if entry else None,
        error_message=entry.error_message if entry else None,
    )


# =============================================================================
# START / STOP
# =============================================================================

def start_sync(
    db: Session,
    service: Any,
    store_id: UUID,
    timeframe_days: int = DEFAULT_TIMEFRAME_DAYS,
    stale_minutes: int = DEFAULT_STALE_MINUTES,
) -> StartSyncResult:
    """Claim the order sync lease for a store.

    The caller schedules the actual run (background task or arq job) only when
    the result is "accepted". The check-then-claim is not atomic; two callers
    racing here can both be accepted.
    """
    reap_ghosts(db, stale_minutes=stale_minutes, store_id=store_id)

    retry_after = service.breaker.retry_after_seconds()
    if retry_after > 0:
        error = CircuitOpenError(retry_after)
        return StartSyncResult(status=START_RATE_LIMITED, message=str(error), retry_after_seconds=retry_after)

    ledger = SyncStatusLedger(db)
    if ledger.is_running(store_id, SyncDataTypeEnum.orders):
        return StartSyncResult(status=START_ALREADY_IN_PROGRESS, message="Order sync already in progress")

    ledger.mark_started(store_id, SyncDataTypeEnum.orders, timeframe_days=timeframe_days)
    return StartSyncResult(status=START_ACCEPTED, message=f"Order sync started for the last {timeframe_days} days")


def stop_sync(db: Session, store_id: UUID, data_type: SyncDataTypeEnum = SyncDataTypeEnum.orders) -> bool:
    """Ask a running sync to stop at its next batch boundary."""
    return SyncStatusLedger(db).request_stop(store_id, data_type)


def resume_stuck_syncs(
    db: Session,
    service: Any,
    stale_minutes: int = DEFAULT_STALE_MINUTES,
    now: Optional[datetime] = None,
) -> ResumeResult:
    """Reap ghost syncs and claim the lease again for the order syncs among them.

    Each order sync is claimed with the timeframe it was originally started
    with; the caller runs the accepted ones (`run_order_sync` or an arq job).
    Ghosts of other data types are only reaped.
    """
    reaped = reap_ghosts(db, stale_minutes=stale_minutes, now=now)
    result = ResumeResult(cleaned_count=reaped.cleaned_count, details=reaped.details)
    ledger = SyncStatusLedger(db)

    for ghost in reaped.details:
        if ghost["data_type"] != SyncDataTypeEnum.orders.value:
            continue

        store_id = UUID(ghost["store_id"])
        entry = ledger.get(store_id, SyncDataTypeEnum.orders)
        timeframe_days = (entry.timeframe_days if entry else None) or DEFAULT_TIMEFRAME_DAYS

        claim = start_sync(db, service, store_id, timeframe_days=timeframe_days, stale_minutes=stale_minutes)
        result.resumed.append({
            "store_id": ghost["store_id"],
            "timeframe_days": timeframe_days,
            "status": claim.status,
            "message": claim.message,
        })
        logger.info(f"[SYNC_STATUS] Resume of order sync for store {store_id} ({timeframe_days}d): {claim.status}")

    return result
