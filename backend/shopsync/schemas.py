"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


# =============================================================================
# Health
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")
    circuit_breaker: Optional[Dict] = Field(default=None, description="Shopify circuit breaker status")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }


# =============================================================================
# Sync
# =============================================================================

class SyncStartResponse(BaseModel):
    """Response for a sync trigger. The run itself continues in the background."""

    status: str = Field(description="accepted | already_in_progress | rate_limited")
    message: str = Field(description="Human-readable outcome")
    store_id: UUID
    timeframe_days: int
    retry_after_seconds: Optional[float] = Field(default=None, description="Set when rate limited")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "accepted",
                "message": "Order sync started for the last 30 days",
                "store_id": "5b7c1f8e-5e2a-4a7f-9c2d-1b1d1f3a9c11",
                "timeframe_days": 30,
                "retry_after_seconds": None,
            }
        }
    }


class SyncStatusResponse(BaseModel):
    """Order sync progress for one store and window."""

    store_id: UUID
    timeframe_days: int = Field(description="Window the progress is measured against")
    orders_synced: int = Field(description="Mirrored orders created inside the window")
    orders_total: Optional[int] = Field(default=None, description="Remote order count (null if Shopify is unavailable)")
    progress_pct: Optional[float] = Field(default=None, description="orders_synced / orders_total x 100, 2 dp")
    remaining: Optional[int] = None
    is_active: bool = Field(description="A sync is running and orders remain to be mirrored")
    is_needed: bool = Field(description="Remote has orders the mirror is missing")
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None


class SyncStopResponse(BaseModel):
    store_id: UUID
    data_type: str
    stopped: bool = Field(description="False when no sync of this type was running")


class GhostSyncDetail(BaseModel):
    store_id: str
    data_type: str
    minutes_stuck: float
    reason: str


class SyncCleanupResponse(BaseModel):
    """Ghost syncs found (GET) or reaped (POST)."""

    cleaned_count: int = Field(description="Entries reaped (0 for a dry listing)")
    details: List[GhostSyncDetail] = Field(default_factory=list)


class ResumedSync(BaseModel):
    store_id: str
    timeframe_days: int
    status: str = Field(description="accepted | already_in_progress | rate_limited")
    message: str


class SyncResumeResponse(BaseModel):
    """Ghost syncs reaped, and the order syncs restarted from their stored timeframe."""

    cleaned_count: int
    resumed_count: int = Field(description="Order syncs accepted and running in the background")
    resumed: List[ResumedSync] = Field(default_factory=list)


class RefundBackfillResponse(BaseModel):
    success: bool
    checked: int = Field(default=0, description="Refunded orders with a $0 cached refund total")
    updated: int = Field(default=0, description="Orders whose refund total changed")
    failed: int = 0
    refunds_recovered: float = Field(default=0.0, description="Refund dollars added to the mirror")
    error: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


class ProductSyncResponse(BaseModel):
    success: bool
    products_created: int = 0
    products_updated: int = 0
    variants_synced: int = 0
    variants_with_cost: int = 0
    variants_missing_cost: int = 0
    costs_updated: int = 0
    error: Optional[str] = None
    errors: List[str] = Field(default_factory=list)


# =============================================================================
# Metrics
# =============================================================================

class FinancialSummaryResponse(BaseModel):
    """Net revenue / net profit with every intermediate step."""

    store_id: UUID
    timeframe_days: int
    window_start: datetime
    window_end: datetime
    fulfillment: str = Field(description="all | fulfilled | unfulfilled")

    order_count: int
    item_count: int
    revenue: float
    shipping_revenue: float
    taxes: float
    discounts: float
    refunds: float = Field(description="Sum of cached refund totals of orders created in the window")
    refunds_by_order_date: bool = Field(
        default=True,
        description="Refunds are attributed to the order's creation date, not the refund date",
    )
    average_order_value: float

    payment_gateway_fees: float
    processing_fees: float
    chargebacks: float = Field(description="Informational; not subtracted from net revenue")
    net_revenue: float

    cogs: float
    cogs_coverage_pct: float = Field(description="Line items with an actual variant cost, 1 dp")
    cogs_method: str = Field(description="actual | hybrid | estimated")
    shipping_costs: float
    shipping_cost_method: str = Field(description="actual | hybrid | none | error")
    additional_costs: float
    subscription_costs: float
    net_profit: float

    additional_cost_breakdown: Dict[str, float] = Field(default_factory=dict)
    subscription_breakdown: Dict[str, float] = Field(default_factory=dict)
