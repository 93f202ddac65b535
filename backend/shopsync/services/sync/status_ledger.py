"""
Sync Status Ledger.

WHAT:
    Reads and writes SyncStatus rows, one per (store, data type): in-progress
    flag, heartbeat, last completion, last error, declared timeframe.

WHY:
    The ledger is the only shared mutable state between the orchestrator, the
    ghost reaper and status readers. Every write is a last-write-wins upsert
    keyed by (store_id, data_type) followed by an immediate commit, so readers
    in other sessions see it.

DESIGN:
    The row is a lease, not a lock. "Don't start if already in progress" is
    best-effort: two callers racing between `is_running()` and `mark_started()`
    can both start.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from shopsync.models import SyncDataTypeEnum, SyncStatus

logger = logging.getLogger(__name__)

GHOST_SYNC_ERROR = "auto-completed ghost sync"


class SyncStatusLedger:
    """
    Ledger accessor bound to a session.

    Usage:
        ledger = SyncStatusLedger(db)
        ledger.mark_started(store_id, SyncDataTypeEnum.orders, timeframe_days=30)
        ledger.heartbeat(store_id, SyncDataTypeEnum.orders)
        ledger.mark_completed(store_id, SyncDataTypeEnum.orders)
    """

    def __init__(self, db: Session, clock=datetime.utcnow):
        self.db = db
        self._clock = clock

    def get(self, store_id: UUID, data_type: SyncDataTypeEnum) -> Optional[SyncStatus]:
        return self.db.query(SyncStatus).filter(
            SyncStatus.store_id == store_id,
            SyncStatus.data_type == data_type,
        ).first()

    def refresh(self, store_id: UUID, data_type: SyncDataTypeEnum) -> Optional[SyncStatus]:
        """Re-read the row from the database, discarding this session's cached copy."""
        entry = self.get(store_id, data_type)
        if entry is not None:
            self.db.refresh(entry)
        return entry

    def _upsert(self, store_id: UUID, data_type: SyncDataTypeEnum, **fields) -> SyncStatus:
        entry = self.get(store_id, data_type)
        if entry is None:
            entry = SyncStatus(store_id=store_id, data_type=data_type)
            self.db.add(entry)

        for key, value in fields.items():
            setattr(entry, key, value)
        entry.updated_at = self._clock()

        self.db.commit()
        return entry

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def is_running(self, store_id: UUID, data_type: SyncDataTypeEnum) -> bool:
        entry = self.refresh(store_id, data_type)
        return bool(entry and entry.sync_in_progress)

    def mark_started(
        self,
        store_id: UUID,
        data_type: SyncDataTypeEnum,
        timeframe_days: Optional[int] = None,
    ) -> SyncStatus:
        """Idle -> Running. Records the window so late readers compute progress against it."""
        logger.info(f"[SYNC_LEDGER] {data_type.value} sync started for store {store_id} ({timeframe_days}d)")
        return self._upsert(
            store_id,
            data_type,
            sync_in_progress=True,
            last_heartbeat=self._clock(),
            timeframe_days=timeframe_days,
            error_message=None,
        )

    def heartbeat(self, store_id: UUID, data_type: SyncDataTypeEnum) -> SyncStatus:
        """Renew the lease of a running sync."""
        return self._upsert(store_id, data_type, last_heartbeat=self._clock())

    def mark_completed(self, store_id: UUID, data_type: SyncDataTypeEnum) -> SyncStatus:
        """Running -> Idle."""
        logger.info(f"[SYNC_LEDGER] {data_type.value} sync completed for store {store_id}")
        return self._upsert(
            store_id,
            data_type,
            sync_in_progress=False,
            last_sync_at=self._clock(),
            last_heartbeat=None,
            error_message=None,
        )

    def mark_failed(self, store_id: UUID, data_type: SyncDataTypeEnum, error_message: str) -> SyncStatus:
        """Running -> Idle-with-error. The heartbeat is cleared so the run is not mistaken for alive."""
        logger.error(f"[SYNC_LEDGER] {data_type.value} sync failed for store {store_id}: {error_message}")
        return self._upsert(
            store_id,
            data_type,
            sync_in_progress=False,
            last_heartbeat=None,
            error_message=error_message,
        )

    def request_stop(self, store_id: UUID, data_type: SyncDataTypeEnum) -> bool:
        """Flip the in-progress flag off; the running orchestrator exits at its next batch boundary.

        Returns:
            True if a running sync was flagged to stop.
        """
        entry = self.get(store_id, data_type)
        if entry is None or not entry.sync_in_progress:
            return False

        logger.info(f"[SYNC_LEDGER] Stop requested for {data_type.value} sync of store {store_id}")
        self._upsert(
            store_id,
            data_type,
            sync_in_progress=False,
            last_heartbeat=None,
            error_message="sync stopped by user",
        )
        return True

    def mark_ghost(self, entry: SyncStatus) -> SyncStatus:
        """Running (dead owner) -> Idle-with-error."""
        return self._upsert(
            entry.store_id,
            entry.data_type,
            sync_in_progress=False,
            last_heartbeat=None,
            error_message=GHOST_SYNC_ERROR,
        )

    def mark_stuck_complete(self, entry: SyncStatus) -> SyncStatus:
        """Running (finished, flag never cleared) -> Idle."""
        return self._upsert(
            entry.store_id,
            entry.data_type,
            sync_in_progress=False,
            last_heartbeat=None,
            last_sync_at=self._clock(),
            error_message=None,
        )
