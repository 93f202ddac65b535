"""Shopify sync service.

WHAT:
    Order sync orchestrator plus the operations in the same family:
    - Orders: fetch the lookback window, insert new orders with their refund
      totals, update statuses of already-mirrored orders
    - Refund backfill: re-fetch refunds for refunded orders cached at $0
    - Products: upsert catalog + variants with cost_per_item
    - Variant costs: refresh unit costs for mirrored products

WHY:
    - Both HTTP endpoints (FastAPI background tasks) and the arq worker share
      one ShopifySyncService instance, so they share one circuit breaker and
      one concurrency gate.
    - Refunds are captured once, when an order is first seen. Re-fetching
      refunds for every known order on every run is the most expensive,
      rate-limit-triggering call; later refunds are picked up by the explicit
      backfill, which only targets refunded orders cached at $0.
    - A sync is a best-effort convergence pass, not a transaction: one bad row
      is counted and skipped, and a run that hits its wall-clock budget
      finishes normally so the next run continues.

REFERENCES:
    - shopsync/services/shopify_client.py (remote source adapter)
    - shopsync/services/sync/circuit_breaker.py
    - shopsync/services/sync/rate_limiter.py
    - shopsync/services/sync/status_ledger.py
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from shopsync.deps import Settings, get_settings
from shopsync.models import (
    ShopifyFinancialStatusEnum,
    ShopifyFulfillmentStatusEnum,
    ShopifyOrder,
    ShopifyOrderLineItem,
    ShopifyProduct,
    ShopifyProductVariant,
    Store,
    SyncDataTypeEnum,
)
from shopsync.services.shopify_client import (
    FatalError,
    RateLimitedError,
    ShopifyAPIError,
    ShopifyClient,
    TransientError,
    to_decimal,
)
from shopsync.services.sync.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError
from shopsync.services.sync.rate_limiter import ConcurrencyGate, RateLimitConfig
from shopsync.services.sync.status_ledger import SyncStatusLedger
from shopsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

REFUND_TRANSACTION_KINDS = {"refund", "void"}
REFUND_ADJUSTMENT_KINDS = {"tax_adjustment", "return_fee", "shipping_refund"}
REFUND_STATUSES = (ShopifyFinancialStatusEnum.refunded, ShopifyFinancialStatusEnum.partially_refunded)
REFUND_TOLERANCE = Decimal("0.01")

VARIANT_COST_CHUNK_SIZE = 50

# Failures that abort a whole run (the breaker is tripped or about to be)
RUN_LEVEL_ERRORS = (RateLimitedError, TransientError, CircuitOpenError)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class OrderSyncResult:
    """Outcome of one order sync run."""
    success: bool
    new_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    fetched_count: int = 0
    budget_exhausted: bool = False
    stopped: bool = False
    rate_limited: bool = False
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class RefundBackfillResult:
    success: bool
    checked: int = 0
    updated: int = 0
    failed: int = 0
    refunds_recovered: Decimal = field(default_factory=lambda: Decimal("0"))
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class ProductSyncResult:
    success: bool
    products_created: int = 0
    products_updated: int = 0
    variants_synced: int = 0
    variants_with_cost: int = 0
    variants_missing_cost: int = 0
    costs_updated: int = 0
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a Shopify ISO timestamp into a naive UTC datetime.

    Shopify returns shop-local offsets ("2024-05-01T10:00:00-04:00"); the mirror
    stores naive UTC like every other timestamp column.
    """
    if not dt_str:
        return None
    if isinstance(dt_str, datetime):
        parsed = dt_str
    else:
        try:
            parsed = datetime.fromisoformat(dt_str.replace("Z", "+00:00"))
        except (ValueError, TypeError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _map_financial_status(status_str: Optional[str]) -> Optional[ShopifyFinancialStatusEnum]:
    """Map a Shopify financial status string to the enum.

    Raises:
        ValueError: For a status we do not know, so the row is skipped instead of
            silently overwriting a known status with NULL.
    """
    if not status_str:
        return None
    return ShopifyFinancialStatusEnum(status_str.lower())


def _map_fulfillment_status(status_str: Optional[str]) -> Optional[ShopifyFulfillmentStatusEnum]:
    if not status_str:
        return None
    return ShopifyFulfillmentStatusEnum(status_str.lower())


def calculate_refund_total(refunds: Optional[Iterable[Dict[str, Any]]]) -> Decimal:
    """Sum a Shopify order's refund records into one amount.

    - transactions of kind refund/void
    - the refund's shipping amount
    - order adjustments for tax, return fees and shipping refunds, as absolute
      values (Shopify signs adjustments negative)
    """
    total = Decimal("0")
    for refund in refunds or []:
        for transaction in refund.get("transactions") or []:
            if transaction.get("kind") in REFUND_TRANSACTION_KINDS:
                total += to_decimal(transaction.get("amount")) or Decimal("0")

        shipping = refund.get("shipping") or {}
        shipping_amount = to_decimal(shipping.get("amount")) or Decimal("0")
        if shipping_amount > 0:
            total += shipping_amount

        for adjustment in refund.get("order_adjustments") or []:
            if adjustment.get("kind") in REFUND_ADJUSTMENT_KINDS:
                total += abs(to_decimal(adjustment.get("amount")) or Decimal("0"))
    return total


def _chunks(items: List[Any], size: int) -> Iterable[List[Any]]:
    for start in range(0, len(items), max(1, size)):
        yield items[start:start + size]


# =============================================================================
# SERVICE
# =============================================================================

class ShopifySyncService:
    """Owns the circuit breaker and concurrency gate for all Shopify sync runs.

    One instance per process (created in `create_app()` and in the arq worker
    startup hook). Tests build independent instances with fake clients.

    Usage:
        service = ShopifySyncService()
        result = await service.sync_orders(db, store_id, timeframe_days=30)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Optional[Callable[[Store], Any]] = None,
        breaker: Optional[CircuitBreaker] = None,
        gate: Optional[ConcurrencyGate] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep
        self.client_factory = client_factory or self._default_client_factory

        self.breaker = breaker or CircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=self.settings.BREAKER_FAILURE_THRESHOLD,
                rate_limit_threshold=self.settings.BREAKER_RATE_LIMIT_THRESHOLD,
                cooldown_seconds=self.settings.BREAKER_COOLDOWN_SECONDS,
                rate_limit_cooldown_seconds=self.settings.BREAKER_RATE_LIMIT_COOLDOWN_SECONDS,
            ),
            clock=clock,
        )
        self.gate = gate or ConcurrencyGate(
            RateLimitConfig(
                max_workers=self.settings.SYNC_MAX_WORKERS,
                call_spacing_seconds=self.settings.SYNC_CALL_SPACING_SECONDS,
            )
        )

        self.wall_clock_budget = timedelta(seconds=self.settings.SYNC_WALL_CLOCK_BUDGET_SECONDS)
        self.batch_size = self.settings.SYNC_BATCH_SIZE
        self.refund_backfill_delay = self.settings.REFUND_BACKFILL_DELAY_SECONDS

    def _default_client_factory(self, store: Store) -> ShopifyClient:
        return ShopifyClient(
            shop_domain=store.shop_domain,
            access_token=store.access_token,
            api_version=self.settings.SHOPIFY_API_VERSION,
            timeout=self.settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS,
        )

    async def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run one remote call through the gate and the breaker.

        The breaker is checked after the gate admits the call, so workers queued
        behind a call that tripped the breaker fail fast without contacting Shopify.
        """
        return await self.gate.run(self.breaker.call, func, *args, **kwargs)

    def _get_store(self, db: Session, store_id: UUID) -> Optional[Store]:
        return db.query(Store).filter(Store.id == store_id).first()

    def _fail_run(
        self,
        db: Session,
        ledger: SyncStatusLedger,
        store_id: UUID,
        data_type: SyncDataTypeEnum,
        error: Exception,
    ) -> str:
        """Record a run-level failure: breaker, ledger, Sentry."""
        db.rollback()
        # Remote failures were already counted by breaker.call()
        if not isinstance(error, (ShopifyAPIError, CircuitOpenError)):
            self.breaker.record_failure(error)

        if isinstance(error, ShopifyAPIError):
            message = f"Shopify API error: {error}"
        elif isinstance(error, CircuitOpenError):
            message = str(error)
        else:
            message = f"Unexpected error during {data_type.value} sync: {error}"

        ledger.mark_failed(store_id, data_type, message)
        if not isinstance(error, RUN_LEVEL_ERRORS):
            capture_exception(error, extra={"store_id": str(store_id), "data_type": data_type.value})
        return message

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def sync_orders(self, db: Session, store_id: UUID, timeframe_days: int = 30) -> OrderSyncResult:
        """Converge the local mirror with Shopify for orders created in the last `timeframe_days`.

        Args:
            db: Database session
            store_id: Store UUID
            timeframe_days: Lookback window

        Returns:
            OrderSyncResult (success=False with error when the run failed)
        """
        start_time = self._clock()
        deadline = start_time + self.wall_clock_budget
        result = OrderSyncResult(success=False)
        data_type = SyncDataTypeEnum.orders

        store = self._get_store(db, store_id)
        if not store:
            result.error = "Store not found"
            return result

        ledger = SyncStatusLedger(db, clock=self._clock)

        try:
            self.breaker.check()
        except CircuitOpenError as e:
            logger.warning(f"[SHOPIFY_SYNC] Order sync refused for store {store_id}: {e}")
            ledger.mark_failed(store_id, data_type, str(e))
            result.rate_limited = True
            result.error = str(e)
            return result

        ledger.mark_started(store_id, data_type, timeframe_days=timeframe_days)
        logger.info(f"[SHOPIFY_SYNC] Starting order sync for store {store_id} ({timeframe_days}d)")

        try:
            client = self.client_factory(store)

            window_end = self._clock()
            window_start = window_end - timedelta(days=timeframe_days)
            remote_orders = await self._fetch_orders(client, ledger, store_id, window_start, window_end)
            result.fetched_count = len(remote_orders)

            new_orders, existing_pairs = self._partition_orders(db, store_id, remote_orders)
            logger.info(
                f"[SHOPIFY_SYNC] Fetched {len(remote_orders)} orders: "
                f"{len(new_orders)} new, {len(existing_pairs)} existing"
            )

            await self._insert_new_orders(db, client, ledger, store, new_orders, deadline, result)
            if not result.stopped:
                self._update_existing_orders(db, ledger, store_id, existing_pairs, deadline, result)

        except Exception as e:
            result.error = self._fail_run(db, ledger, store_id, data_type, e)
            result.rate_limited = isinstance(e, (RateLimitedError, CircuitOpenError))
            result.errors.append(result.error)
            result.duration_seconds = (self._clock() - start_time).total_seconds()
            logger.error(f"[SHOPIFY_SYNC] Order sync failed for store {store_id}: {result.error}")
            return result

        # Partial failures still count as success; a run where every row failed does not
        result.success = result.new_count + result.updated_count > 0 or result.failed_count == 0
        if not result.success:
            result.error = f"All {result.failed_count} orders failed to sync"

        if not result.stopped:
            if result.success:
                ledger.mark_completed(store_id, data_type)
            else:
                ledger.mark_failed(store_id, data_type, result.error)
        if result.success:
            self.breaker.record_run_success()

        result.duration_seconds = (self._clock() - start_time).total_seconds()

        logger.info(
            "[SHOPIFY_SYNC] Order sync complete: new=%d, updated=%d, failed=%d, "
            "budget_exhausted=%s, stopped=%s, duration=%.2fs",
            result.new_count, result.updated_count, result.failed_count,
            result.budget_exhausted, result.stopped, result.duration_seconds,
        )
        return result

    async def _fetch_orders(
        self,
        client: Any,
        ledger: SyncStatusLedger,
        store_id: UUID,
        window_start: datetime,
        window_end: datetime,
    ) -> List[Dict[str, Any]]:
        """Page through every remote order in the window, renewing the lease per page."""
        orders: List[Dict[str, Any]] = []
        page_info = None

        while True:
            page, page_info = await self.call(
                client.get_orders,
                created_at_min=window_start,
                created_at_max=window_end,
                page_info=page_info,
            )
            orders.extend(page)
            ledger.heartbeat(store_id, SyncDataTypeEnum.orders)
            if not page_info:
                break

        return orders

    def _partition_orders(
        self,
        db: Session,
        store_id: UUID,
        remote_orders: List[Dict[str, Any]],
    ) -> Tuple[List[Dict[str, Any]], List[Tuple[Dict[str, Any], ShopifyOrder]]]:
        """Split remote orders into new vs already-mirrored with one existence query."""
        unique: Dict[str, Dict[str, Any]] = {}
        for order in remote_orders:
            unique[order["external_order_id"]] = order

        existing_rows = db.query(ShopifyOrder).filter(
            ShopifyOrder.store_id == store_id,
            ShopifyOrder.external_order_id.in_(list(unique.keys())),
        ).all() if unique else []
        existing_by_id = {row.external_order_id: row for row in existing_rows}

        new_orders = []
        existing_pairs = []
        for external_id, order in unique.items():
            local = existing_by_id.get(external_id)
            if local is None:
                new_orders.append(order)
            else:
                existing_pairs.append((order, local))
        return new_orders, existing_pairs

    # -------------------------------------------------------------------------
    # New-order path
    # -------------------------------------------------------------------------

    async def _resolve_refund_total(self, client: Any, order_data: Dict[str, Any]) -> Decimal:
        embedded = order_data.get("refunds")
        if embedded is not None:
            return calculate_refund_total(embedded)
        refunds = await self.call(client.get_order_refunds, order_data["external_order_id"])
        return calculate_refund_total(refunds)

    async def _insert_new_orders(
        self,
        db: Session,
        client: Any,
        ledger: SyncStatusLedger,
        store: Store,
        new_orders: List[Dict[str, Any]],
        deadline: datetime,
        result: OrderSyncResult,
    ) -> None:
        """Insert never-seen orders with line items and their refund total, batch by batch."""
        for batch_index, batch in enumerate(_chunks(new_orders, self.batch_size)):
            if batch_index:
                if self._clock() >= deadline:
                    result.budget_exhausted = True
                    logger.warning("[SHOPIFY_SYNC] Wall-clock budget exhausted during new-order inserts")
                    return
                if not ledger.is_running(store.id, SyncDataTypeEnum.orders):
                    result.stopped = True
                    logger.info("[SHOPIFY_SYNC] Stop requested, ending run early")
                    return

            # Refund lookups run concurrently, bounded by the gate
            refund_totals = await asyncio.gather(
                *[self._resolve_refund_total(client, order_data) for order_data in batch],
                return_exceptions=True,
            )

            rows = []
            for order_data, refund_total in zip(batch, refund_totals):
                if isinstance(refund_total, RUN_LEVEL_ERRORS):
                    raise refund_total
                if isinstance(refund_total, Exception):
                    self._record_row_failure(result, order_data, refund_total)
                    continue
                try:
                    rows.append(self._build_order(store, order_data, refund_total))
                except Exception as e:
                    self._record_row_failure(result, order_data, e)

            result.new_count += self._commit_new_rows(db, rows, result)
            ledger.heartbeat(store.id, SyncDataTypeEnum.orders)

    def _build_order(self, store: Store, order_data: Dict[str, Any], refund_total: Decimal) -> ShopifyOrder:
        now = self._clock()
        created_at = _parse_datetime(order_data.get("order_created_at"))
        if created_at is None:
            raise ValueError("order has no created_at")

        order = ShopifyOrder(
            store_id=store.id,
            external_order_id=order_data["external_order_id"],
            order_number=order_data.get("order_number"),
            name=order_data.get("name"),
            subtotal_price=order_data.get("subtotal_price"),
            total_price=order_data.get("total_price") or Decimal("0"),
            total_shipping=order_data.get("total_shipping"),
            total_tax=order_data.get("total_tax"),
            total_discounts=order_data.get("total_discounts"),
            total_refunds=refund_total,
            currency=order_data.get("currency") or store.currency,
            financial_status=_map_financial_status(order_data.get("financial_status")),
            fulfillment_status=_map_fulfillment_status(order_data.get("fulfillment_status")),
            customer_first_name=order_data.get("customer_first_name"),
            customer_last_name=order_data.get("customer_last_name"),
            customer_email=order_data.get("customer_email"),
            payment_gateway=order_data.get("payment_gateway"),
            processing_method=order_data.get("processing_method"),
            order_created_at=created_at,
            order_updated_at=_parse_datetime(order_data.get("order_updated_at")),
            last_synced_at=now,
        )
        order.line_items = [
            ShopifyOrderLineItem(
                external_line_item_id=li["external_line_item_id"],
                external_product_id=li.get("external_product_id"),
                external_variant_id=li.get("external_variant_id"),
                title=li.get("title") or "",
                variant_title=li.get("variant_title"),
                sku=li.get("sku"),
                quantity=li.get("quantity") or 1,
                price=li.get("price") or Decimal("0"),
                total_discount=li.get("total_discount") or Decimal("0"),
            )
            for li in order_data.get("line_items") or []
        ]
        return order

    def _commit_new_rows(self, db: Session, rows: List[ShopifyOrder], result: OrderSyncResult) -> int:
        """Bulk insert; if the batch is rejected, retry row by row so one bad row costs only itself."""
        if not rows:
            return 0
        try:
            db.add_all(rows)
            db.commit()
            return len(rows)
        except Exception as e:
            db.rollback()
            logger.warning(f"[SHOPIFY_SYNC] Bulk insert of {len(rows)} orders failed ({e}); retrying per row")

        inserted = 0
        for row in rows:
            try:
                db.add(row)
                db.commit()
                inserted += 1
            except Exception as e:
                db.rollback()
                self._record_row_failure(result, {"external_order_id": row.external_order_id}, e)
        return inserted

    # -------------------------------------------------------------------------
    # Existing-order path
    # -------------------------------------------------------------------------

    def _update_existing_orders(
        self,
        db: Session,
        ledger: SyncStatusLedger,
        store_id: UUID,
        existing_pairs: List[Tuple[Dict[str, Any], ShopifyOrder]],
        deadline: datetime,
        result: OrderSyncResult,
    ) -> None:
        """Refresh statuses of already-mirrored orders. Never touches total_refunds."""
        for index, (order_data, order) in enumerate(existing_pairs):
            if index and index % self.batch_size == 0:
                db.commit()
                ledger.heartbeat(store_id, SyncDataTypeEnum.orders)
                if not ledger.is_running(store_id, SyncDataTypeEnum.orders):
                    result.stopped = True
                    logger.info("[SHOPIFY_SYNC] Stop requested, ending run early")
                    break

            if self._clock() >= deadline:
                result.budget_exhausted = True
                logger.warning(
                    f"[SHOPIFY_SYNC] Wall-clock budget exhausted after {result.updated_count} updates; "
                    f"{len(existing_pairs) - index} orders left for the next run"
                )
                break

            try:
                self._apply_status_update(order, order_data)
                result.updated_count += 1
            except Exception as e:
                self._record_row_failure(result, order_data, e)

        db.commit()

    def _apply_status_update(self, order: ShopifyOrder, order_data: Dict[str, Any]) -> None:
        financial_status = _map_financial_status(order_data.get("financial_status"))
        fulfillment_status = _map_fulfillment_status(order_data.get("fulfillment_status"))

        order.financial_status = financial_status
        order.fulfillment_status = fulfillment_status
        if not order.payment_gateway and order_data.get("payment_gateway"):
            order.payment_gateway = order_data["payment_gateway"]
        if not order.processing_method and order_data.get("processing_method"):
            order.processing_method = order_data["processing_method"]

        updated_at = _parse_datetime(order_data.get("order_updated_at"))
        if updated_at:
            order.order_updated_at = updated_at
        order.last_synced_at = self._clock()

    def _record_row_failure(self, result: Any, order_data: Dict[str, Any], error: Exception) -> None:
        message = f"Error syncing order {order_data.get('external_order_id')}: {error}"
        logger.error(f"[SHOPIFY_SYNC] {message}")
        result.failed_count += 1
        result.errors.append(message)

    # =========================================================================
    # REFUND BACKFILL
    # =========================================================================

    async def backfill_refunds(
        self,
        db: Session,
        store_id: UUID,
        timeframe_days: Optional[int] = None,
    ) -> RefundBackfillResult:
        """Re-fetch refunds for refunded / partially refunded orders whose cached refund total is 0.

        Updates only when the fetched total differs by more than $0.01, and waits
        REFUND_BACKFILL_DELAY_SECONDS between calls.
        """
        result = RefundBackfillResult(success=False)
        data_type = SyncDataTypeEnum.refunds

        store = self._get_store(db, store_id)
        if not store:
            result.error = "Store not found"
            return result

        ledger = SyncStatusLedger(db, clock=self._clock)
        try:
            self.breaker.check()
        except CircuitOpenError as e:
            result.error = str(e)
            return result

        ledger.mark_started(store_id, data_type, timeframe_days=timeframe_days)

        query = db.query(ShopifyOrder).filter(
            ShopifyOrder.store_id == store_id,
            ShopifyOrder.financial_status.in_(REFUND_STATUSES),
            ShopifyOrder.total_refunds == 0,
        )
        if timeframe_days:
            query = query.filter(ShopifyOrder.order_created_at >= self._clock() - timedelta(days=timeframe_days))
        candidates = query.all()

        logger.info(f"[SHOPIFY_SYNC] Refund backfill: {len(candidates)} candidate orders for store {store_id}")

        try:
            client = self.client_factory(store)
            for index, order in enumerate(candidates):
                if index:
                    await self._sleep(self.refund_backfill_delay)
                    if index % self.batch_size == 0:
                        db.commit()
                        ledger.heartbeat(store_id, data_type)

                result.checked += 1
                try:
                    refunds = await self.call(client.get_order_refunds, order.external_order_id)
                except FatalError as e:
                    message = f"Error fetching refunds for order {order.external_order_id}: {e}"
                    logger.error(f"[SHOPIFY_SYNC] {message}")
                    result.failed += 1
                    result.errors.append(message)
                    continue

                refund_total = calculate_refund_total(refunds)
                cached = Decimal(str(order.total_refunds or 0))
                if abs(refund_total - cached) > REFUND_TOLERANCE:
                    order.total_refunds = refund_total
                    order.last_synced_at = self._clock()
                    result.updated += 1
                    result.refunds_recovered += refund_total - cached

            db.commit()
        except Exception as e:
            result.error = self._fail_run(db, ledger, store_id, data_type, e)
            result.errors.append(result.error)
            return result

        ledger.mark_completed(store_id, data_type)
        self.breaker.record_run_success()
        result.success = True

        logger.info(
            "[SHOPIFY_SYNC] Refund backfill complete: checked=%d, updated=%d, failed=%d, recovered=$%.2f",
            result.checked, result.updated, result.failed, result.refunds_recovered,
        )
        return result

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def sync_products(self, db: Session, store_id: UUID) -> ProductSyncResult:
        """Upsert the product catalog and its variants (with cost_per_item)."""
        result = ProductSyncResult(success=False)
        data_type = SyncDataTypeEnum.products

        store = self._get_store(db, store_id)
        if not store:
            result.error = "Store not found"
            return result

        ledger = SyncStatusLedger(db, clock=self._clock)
        try:
            self.breaker.check()
        except CircuitOpenError as e:
            result.error = str(e)
            return result

        ledger.mark_started(store_id, data_type)

        try:
            client = self.client_factory(store)
            cursor = None
            while True:
                products, cursor = await self.call(client.get_products, cursor=cursor)
                self._upsert_products(db, store_id, products, result)
                db.commit()
                ledger.heartbeat(store_id, data_type)
                if not cursor:
                    break
        except Exception as e:
            result.error = self._fail_run(db, ledger, store_id, data_type, e)
            result.errors.append(result.error)
            return result

        ledger.mark_completed(store_id, data_type)
        self.breaker.record_run_success()
        result.success = True

        logger.info(
            "[SHOPIFY_SYNC] Product sync complete: created=%d, updated=%d, variants=%d, "
            "with_cost=%d, missing_cost=%d",
            result.products_created, result.products_updated, result.variants_synced,
            result.variants_with_cost, result.variants_missing_cost,
        )
        return result

    def _upsert_products(
        self,
        db: Session,
        store_id: UUID,
        products: List[Dict[str, Any]],
        result: ProductSyncResult,
    ) -> None:
        ids = [p["external_product_id"] for p in products]
        existing = {
            p.external_product_id: p
            for p in db.query(ShopifyProduct).filter(
                ShopifyProduct.store_id == store_id,
                ShopifyProduct.external_product_id.in_(ids),
            ).all()
        } if ids else {}

        now = self._clock()
        for product_data in products:
            product = existing.get(product_data["external_product_id"])
            if product is None:
                product = ShopifyProduct(store_id=store_id, external_product_id=product_data["external_product_id"])
                db.add(product)
                existing[product.external_product_id] = product
                result.products_created += 1
            else:
                result.products_updated += 1

            product.title = product_data.get("title") or ""
            product.handle = product_data.get("handle")
            product.status = product_data.get("status") or "active"
            product.vendor = product_data.get("vendor")
            product.product_type = product_data.get("product_type")
            product.last_synced_at = now

            self._sync_variants(product, product_data.get("variants") or [], result)

    def _sync_variants(
        self,
        product: ShopifyProduct,
        variants: List[Dict[str, Any]],
        result: ProductSyncResult,
    ) -> None:
        """Upsert variants by remote id and drop the ones Shopify no longer returns."""
        by_id = {v.external_variant_id: v for v in product.variants}
        seen = set()

        for variant_data in variants:
            external_id = variant_data["external_variant_id"]
            seen.add(external_id)
            variant = by_id.get(external_id)
            if variant is None:
                variant = ShopifyProductVariant(external_variant_id=external_id)
                product.variants.append(variant)

            variant.title = variant_data.get("title")
            variant.sku = variant_data.get("sku")
            variant.price = variant_data.get("price")
            variant.compare_at_price = variant_data.get("compare_at_price")
            variant.inventory_quantity = variant_data.get("inventory_quantity")
            variant.cost_per_item = variant_data.get("cost_per_item")

            result.variants_synced += 1
            if variant.cost_per_item is None:
                result.variants_missing_cost += 1
            else:
                result.variants_with_cost += 1

        for external_id, variant in by_id.items():
            if external_id not in seen:
                product.variants.remove(variant)

    async def refresh_variant_costs(self, db: Session, store_id: UUID) -> ProductSyncResult:
        """Pull current unit costs for mirrored products; only positive costs are written."""
        result = ProductSyncResult(success=False)
        data_type = SyncDataTypeEnum.products_costs

        store = self._get_store(db, store_id)
        if not store:
            result.error = "Store not found"
            return result

        ledger = SyncStatusLedger(db, clock=self._clock)
        try:
            self.breaker.check()
        except CircuitOpenError as e:
            result.error = str(e)
            return result

        ledger.mark_started(store_id, data_type)
        products = db.query(ShopifyProduct).filter(ShopifyProduct.store_id == store_id).all()
        by_external_id = {p.external_product_id: p for p in products}

        try:
            client = self.client_factory(store)
            for chunk in _chunks(list(by_external_id.keys()), VARIANT_COST_CHUNK_SIZE):
                if not ledger.is_running(store_id, data_type):
                    logger.info("[SHOPIFY_SYNC] Stop requested, ending cost refresh early")
                    break

                costs = await self.call(client.get_variant_costs, chunk)
                for product_id, variant_costs in costs.items():
                    product = by_external_id.get(product_id)
                    if product is None:
                        continue
                    for variant in product.variants:
                        cost = variant_costs.get(variant.external_variant_id)
                        if cost is None or cost <= 0:
                            continue
                        result.variants_synced += 1
                        if variant.cost_per_item is None or Decimal(str(variant.cost_per_item)) != cost:
                            variant.cost_per_item = cost
                            result.costs_updated += 1
                db.commit()
                ledger.heartbeat(store_id, data_type)
        except Exception as e:
            result.error = self._fail_run(db, ledger, store_id, data_type, e)
            result.errors.append(result.error)
            return result

        if ledger.is_running(store_id, data_type):
            ledger.mark_completed(store_id, data_type)
        self.breaker.record_run_success()
        result.success = True

        logger.info(
            f"[SHOPIFY_SYNC] Variant cost refresh complete: checked={result.variants_synced}, "
            f"updated={result.costs_updated}"
        )
        return result


# =============================================================================
# BACKGROUND ENTRY POINTS
# =============================================================================

async def run_order_sync(service: ShopifySyncService, store_id: UUID, timeframe_days: int) -> OrderSyncResult:
    """Run one order sync with its own session (FastAPI background task / arq job)."""
    from shopsync.database import get_sync_session

    with get_sync_session() as db:
        return await service.sync_orders(db, store_id, timeframe_days)
