"""Financial metrics endpoint.

WHAT: Net revenue / net profit for one store and window
WHY: Thin wrapper; all arithmetic lives in FinancialMetricsService
REFERENCES: shopsync/services/financial_metrics_service.py
"""

import logging
from functools import lru_cache
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from shopsync import schemas
from shopsync.database import get_db
from shopsync.deps import get_settings
from shopsync.models import Store
from shopsync.services.financial_metrics_service import FinancialMetricsService, MetricsFilters
from shopsync.services.shipping_costs import ShippingCostSource

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Metrics"])


@lru_cache()
def get_shipping_source() -> ShippingCostSource:
    """One engine for the shipping database per process."""
    return ShippingCostSource.from_url(get_settings().SHIPPING_DATABASE_URL)


@router.get("/stores/{store_id}/metrics", response_model=schemas.FinancialSummaryResponse)
def get_financial_metrics(
    store_id: UUID,
    timeframe: str = Query(default="30d", description="7d | 30d | 90d | 1y"),
    fulfillment: str = Query(default="all", pattern="^(all|fulfilled|unfulfilled)$"),
    db: Session = Depends(get_db),
    shipping_source: ShippingCostSource = Depends(get_shipping_source),
) -> schemas.FinancialSummaryResponse:
    store = db.query(Store).filter(Store.id == store_id).first()
    if not store:
        raise HTTPException(status_code=404, detail=f"Store {store_id} not found")

    service = FinancialMetricsService(db, shipping_source)
    summary = service.compute_metrics(store_id, timeframe=timeframe, filters=MetricsFilters(fulfillment=fulfillment))

    return schemas.FinancialSummaryResponse(
        store_id=store_id,
        timeframe_days=summary.timeframe_days,
        window_start=summary.window_start,
        window_end=summary.window_end,
        fulfillment=summary.fulfillment,
        order_count=summary.order_count,
        item_count=summary.item_count,
        revenue=float(summary.revenue),
        shipping_revenue=float(summary.shipping_revenue),
        taxes=float(summary.taxes),
        discounts=float(summary.discounts),
        refunds=float(summary.refunds),
        refunds_by_order_date=summary.refunds_by_order_date,
        average_order_value=float(summary.average_order_value),
        payment_gateway_fees=float(summary.payment_gateway_fees),
        processing_fees=float(summary.processing_fees),
        chargebacks=float(summary.chargebacks),
        net_revenue=float(summary.net_revenue),
        cogs=float(summary.cogs),
        cogs_coverage_pct=summary.cogs_coverage_pct,
        cogs_method=summary.cogs_method,
        shipping_costs=float(summary.shipping_costs),
        shipping_cost_method=summary.shipping_cost_method,
        additional_costs=float(summary.additional_costs),
        subscription_costs=float(summary.subscription_costs),
        net_profit=float(summary.net_profit),
        additional_cost_breakdown={k: float(v) for k, v in summary.additional_cost_breakdown.items()},
        subscription_breakdown={k: float(v) for k, v in summary.subscription_breakdown.items()},
    )
