"""Shopify synchronization endpoints.

WHAT:
    Thin HTTP wrappers for the sync services: start/stop order syncs, read
    progress, trigger refund backfill and product sync, reap ghost syncs,
    resume order syncs whose worker died.

WHY:
    - Routers handle request parsing only
    - Business logic is reused by both HTTP calls and the arq worker
    - Order syncs run as background tasks; the trigger returns immediately and
      the UI polls the status endpoint

REFERENCES:
    - shopsync/services/shopify_sync_service.py
    - shopsync/services/sync_status_service.py
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from shopsync import schemas
from shopsync.database import get_db
from shopsync.deps import get_settings, get_sync_service
from shopsync.models import Store, SyncDataTypeEnum
from shopsync.services import sync_status_service
from shopsync.services.shopify_sync_service import ShopifySyncService, run_order_sync

logger = logging.getLogger(__name__)


router = APIRouter(tags=["Shopify Sync"])


# =============================================================================
# Validation helper
# =============================================================================

def _get_store_or_404(db: Session, store_id: UUID) -> Store:
    store = db.query(Store).filter(Store.id == store_id).first()
    if not store:
        raise HTTPException(status_code=404, detail=f"Store {store_id} not found")
    return store


# =============================================================================
# Order sync
# =============================================================================

@router.post(
    "/stores/{store_id}/sync/orders",
    response_model=schemas.SyncStartResponse,
    status_code=202,
)
async def start_order_sync(
    store_id: UUID,
    background_tasks: BackgroundTasks,
    timeframe_days: int = Query(default=30, ge=1, le=3650, description="Lookback window in days"),
    db: Session = Depends(get_db),
    service: ShopifySyncService = Depends(get_sync_service),
) -> schemas.SyncStartResponse:
    """Start an order sync in the background.

    Returns "already_in_progress" when a live sync holds the lease and
    "rate_limited" while the circuit breaker is cooling down.
    """
    logger.info(f"[SHOPIFY_SYNC] HTTP order sync requested: store={store_id} timeframe={timeframe_days}d")
    _get_store_or_404(db, store_id)

    result = sync_status_service.start_sync(
        db,
        service,
        store_id,
        timeframe_days=timeframe_days,
        stale_minutes=get_settings().SYNC_HEARTBEAT_STALE_MINUTES,
    )
    if result.status == sync_status_service.START_ACCEPTED:
        background_tasks.add_task(run_order_sync, service, store_id, timeframe_days)

    return schemas.SyncStartResponse(
        status=result.status,
        message=result.message,
        store_id=store_id,
        timeframe_days=timeframe_days,
        retry_after_seconds=result.retry_after_seconds,
    )


@router.get("/stores/{store_id}/sync/status", response_model=schemas.SyncStatusResponse)
async def get_order_sync_status(
    store_id: UUID,
    timeframe: str = Query(default="30d", description="7d | 30d | 90d | 1y"),
    db: Session = Depends(get_db),
    service: ShopifySyncService = Depends(get_sync_service),
) -> schemas.SyncStatusResponse:
    """Order sync progress. Ghost and stuck-complete entries are repaired before reading."""
    _get_store_or_404(db, store_id)

    report = await sync_status_service.get_status(
        db,
        service,
        store_id,
        timeframe=timeframe,
        stale_minutes=get_settings().SYNC_HEARTBEAT_STALE_MINUTES,
    )
    return schemas.SyncStatusResponse(
        store_id=store_id,
        timeframe_days=report.timeframe_days,
        orders_synced=report.orders_synced,
        orders_total=report.orders_total,
        progress_pct=report.progress_pct,
        remaining=report.remaining,
        is_active=report.is_active,
        is_needed=report.is_needed,
        last_sync_at=report.last_sync_at,
        error_message=report.error_message,
    )


@router.post("/stores/{store_id}/sync/stop", response_model=schemas.SyncStopResponse)
def stop_sync(
    store_id: UUID,
    data_type: SyncDataTypeEnum = Query(default=SyncDataTypeEnum.orders),
    db: Session = Depends(get_db),
) -> schemas.SyncStopResponse:
    """Ask a running sync to stop; it exits at its next batch boundary."""
    _get_store_or_404(db, store_id)
    stopped = sync_status_service.stop_sync(db, store_id, data_type)
    return schemas.SyncStopResponse(store_id=store_id, data_type=data_type.value, stopped=stopped)


# =============================================================================
# Refunds / products
# =============================================================================

@router.post("/stores/{store_id}/sync/refunds/backfill", response_model=schemas.RefundBackfillResponse)
async def backfill_refunds(
    store_id: UUID,
    timeframe_days: Optional[int] = Query(default=None, ge=1, description="Only orders created in the last N days"),
    db: Session = Depends(get_db),
    service: ShopifySyncService = Depends(get_sync_service),
) -> schemas.RefundBackfillResponse:
    """Re-fetch refunds for refunded orders whose cached refund total is $0."""
    logger.info(f"[SHOPIFY_SYNC] HTTP refund backfill requested: store={store_id}")
    _get_store_or_404(db, store_id)

    result = await service.backfill_refunds(db, store_id, timeframe_days=timeframe_days)
    return schemas.RefundBackfillResponse(
        success=result.success,
        checked=result.checked,
        updated=result.updated,
        failed=result.failed,
        refunds_recovered=float(result.refunds_recovered),
        error=result.error,
        errors=result.errors,
    )


@router.post("/stores/{store_id}/sync/products", response_model=schemas.ProductSyncResponse)
async def sync_products(
    store_id: UUID,
    db: Session = Depends(get_db),
    service: ShopifySyncService = Depends(get_sync_service),
) -> schemas.ProductSyncResponse:
    """Sync the product catalog with variant costs (needed for actual COGS)."""
    logger.info(f"[SHOPIFY_SYNC] HTTP product sync requested: store={store_id}")
    _get_store_or_404(db, store_id)

    result = await service.sync_products(db, store_id)
    return schemas.ProductSyncResponse(
        success=result.success,
        products_created=result.products_created,
        products_updated=result.products_updated,
        variants_synced=result.variants_synced,
        variants_with_cost=result.variants_with_cost,
        variants_missing_cost=result.variants_missing_cost,
        costs_updated=result.costs_updated,
        error=result.error,
        errors=result.errors,
    )


# =============================================================================
# Ghost cleanup
# =============================================================================

@router.get("/sync/cleanup", response_model=schemas.SyncCleanupResponse)
def list_ghost_syncs(db: Session = Depends(get_db)) -> schemas.SyncCleanupResponse:
    """List syncs that look dead without touching them."""
    ghosts = sync_status_service.find_ghosts(db, stale_minutes=get_settings().SYNC_HEARTBEAT_STALE_MINUTES)
    details = [
        schemas.GhostSyncDetail(
            store_id=g["store_id"],
            data_type=g["data_type"],
            minutes_stuck=g["minutes_stuck"],
            reason=g["reason"],
        )
        for g in ghosts
    ]
    return schemas.SyncCleanupResponse(cleaned_count=0, details=details)


@router.post("/sync/cleanup", response_model=schemas.SyncCleanupResponse)
def cleanup_ghost_syncs(db: Session = Depends(get_db)) -> schemas.SyncCleanupResponse:
    """Reap every ghost sync now (the worker also does this every 5 minutes)."""
    result = sync_status_service.reap_ghosts(db, stale_minutes=get_settings().SYNC_HEARTBEAT_STALE_MINUTES)
    return schemas.SyncCleanupResponse(
        cleaned_count=result.cleaned_count,
        details=[schemas.GhostSyncDetail(**d) for d in result.details],
    )


@router.post("/sync/resume", response_model=schemas.SyncResumeResponse)
def resume_stuck_syncs(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    service: ShopifySyncService = Depends(get_sync_service),
) -> schemas.SyncResumeResponse:
    """Reap ghost syncs and restart the dead order syncs with the timeframe they were started with."""
    result = sync_status_service.resume_stuck_syncs(
        db, service, stale_minutes=get_settings().SYNC_HEARTBEAT_STALE_MINUTES
    )

    accepted = [r for r in result.resumed if r["status"] == sync_status_service.START_ACCEPTED]
    for item in accepted:
        background_tasks.add_task(run_order_sync, service, UUID(item["store_id"]), item["timeframe_days"])

    logger.info(f"[SHOPIFY_SYNC] Resumed {len(accepted)} stuck order syncs ({result.cleaned_count} ghosts reaped)")
    return schemas.SyncResumeResponse(
        cleaned_count=result.cleaned_count,
        resumed_count=len(accepted),
        resumed=[schemas.ResumedSync(**r) for r in result.resumed],
    )
