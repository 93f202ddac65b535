"""
Financial Metrics Service
=========================

Net revenue / net profit for one store over a reporting window, computed from
the local mirror plus store-scoped cost settings.

WHAT: Aggregates mirrored orders into a FinancialSummary with every
      intermediate step reported (revenue, refunds, fees, COGS, shipping,
      additional costs, subscriptions)
WHY: Merchants need to see how net profit was derived, not only the number;
     every fallback (estimated COGS, averaged shipping) is surfaced as a
     method label next to the amount
HOW: One order query for the window, one variant-cost query for the line
     items, one lookup against the shipping database

Formulas:
- Net revenue = revenue - refunds - gateway fees - processing fees
- Net profit  = net revenue - COGS - additional costs - subscriptions - shipping
- Gateway fee = revenue x payment_gateway_rate
- Processing  = orders x processing_fee_per_order
- Additional  = revenue x pct_order/100 + items x revenue x pct_item/100
                + orders x flat_order + items x flat_item   (per active row)
- Subscription = daily rate x window days; daily = monthly x 12/365 or yearly/365
- Chargebacks, AOV, item count are informational only

Refunds are bucketed by order creation date: a refund issued today for an
order placed 40 days ago is not in the 30-day window. The summary carries
`refunds_by_order_date=True` so callers can label it.

Usage:
    >>> service = FinancialMetricsService(db, shipping_source)
    >>> summary = service.compute_metrics(store_id, timeframe="30d")
    >>> summary.net_profit
    Decimal('1234.56')

References:
- shopsync/services/shipping_costs.py: label costs from the fulfillment database
- shopsync/models.py: FeeConfiguration, AdditionalCost, SubscriptionFee
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session, selectinload

from shopsync.models import (
    AdditionalCost,
    BillingTypeEnum,
    FeeConfiguration,
    ShopifyFulfillmentStatusEnum,
    ShopifyOrder,
    ShopifyProduct,
    ShopifyProductVariant,
    SubscriptionFee,
)
from shopsync.services.shipping_costs import ShippingCostSource, ShippingSourceError, clean_order_name
from shopsync.services.sync_status_service import parse_timeframe

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")
DAYS_PER_YEAR = Decimal("365")

# Used when a store has no FeeConfiguration row yet
DEFAULT_FEES = {
    "payment_gateway_rate": Decimal("0.029"),
    "processing_fee_per_order": Decimal("0.30"),
    "default_cog_rate": Decimal("0.40"),
    "chargeback_rate": Decimal("0.001"),
    "return_processing_rate": Decimal("0.05"),
}

FULFILLMENT_FILTERS = ("all", "fulfilled", "unfulfilled")

COGS_ACTUAL = "actual"
COGS_HYBRID = "hybrid"
COGS_ESTIMATED = "estimated"

SHIPPING_ACTUAL = "actual"
SHIPPING_HYBRID = "hybrid"
SHIPPING_NONE = "none"
SHIPPING_ERROR = "error"


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# =============================================================================
# CONTRACTS
# =============================================================================

@dataclass
class MetricsFilters:
    """Filters applied to the order set. fulfillment: all | fulfilled | unfulfilled."""
    fulfillment: str = "all"

    def __post_init__(self):
        if self.fulfillment not in FULFILLMENT_FILTERS:
            raise ValueError(f"fulfillment must be one of {FULFILLMENT_FILTERS}, got {self.fulfillment!r}")


@dataclass
class CogsResult:
    total: Decimal
    coverage_pct: float
    method: str
    items_with_cost: int = 0
    items_total: int = 0


@dataclass
class ShippingCostResult:
    total: Decimal
    method: str
    orders_with_cost: int = 0
    average_cost: Optional[Decimal] = None


@dataclass
class FinancialSummary:
    """Every step of the net revenue / net profit derivation."""
    timeframe_days: int
    window_start: datetime
    window_end: datetime
    fulfillment: str

    order_count: int
    item_count: int
    revenue: Decimal
    shipping_revenue: Decimal
    taxes: Decimal
    discounts: Decimal
    refunds: Decimal
    average_order_value: Decimal

    payment_gateway_fees: Decimal
    processing_fees: Decimal
    chargebacks: Decimal
    net_revenue: Decimal

    cogs: Decimal
    cogs_coverage_pct: float
    cogs_method: str
    shipping_costs: Decimal
    shipping_cost_method: str
    additional_costs: Decimal
    subscription_costs: Decimal
    net_profit: Decimal

    refunds_by_order_date: bool = True
    additional_cost_breakdown: Dict[str, Decimal] = field(default_factory=dict)
    subscription_breakdown: Dict[str, Decimal] = field(default_factory=dict)


# =============================================================================
# PURE CALCULATIONS
# =============================================================================

def additional_cost_amount(
    cost: AdditionalCost,
    revenue: Decimal,
    order_count: int,
    item_count: int,
) -> Decimal:
    """One additional-cost row applied to the window's totals.

    The per-item percentage is applied as items x revenue x pct, i.e. the
    percentage of revenue charged once per item sold.
    """
    items = Decimal(item_count)
    orders = Decimal(order_count)
    return (
        revenue * _dec(cost.percentage_per_order) / HUNDRED
        + items * revenue * _dec(cost.percentage_per_item) / HUNDRED
        + orders * _dec(cost.flat_rate_per_order)
        + items * _dec(cost.flat_rate_per_item)
    )


def subscription_daily_rate(fee: SubscriptionFee) -> Decimal:
    amount = _dec(fee.amount)
    if fee.billing_type == BillingTypeEnum.yearly:
        return amount / DAYS_PER_YEAR
    return amount * Decimal("12") / DAYS_PER_YEAR


def cogs_method_for(coverage_pct: float) -> str:
    if coverage_pct >= 100:
        return COGS_ACTUAL
    if coverage_pct <= 0:
        return COGS_ESTIMATED
    return COGS_HYBRID


# =============================================================================
# SERVICE
# =============================================================================

class FinancialMetricsService:
    """Computes FinancialSummary for a store from the local mirror."""

    def __init__(self, db: Session, shipping_source: Optional[ShippingCostSource] = None):
        self.db = db
        self.shipping_source = shipping_source or ShippingCostSource(engine=None)

    def get_fee_configuration(self, store_id: UUID) -> Dict[str, Decimal]:
        config = self.db.query(FeeConfiguration).filter(FeeConfiguration.store_id == store_id).first()
        if config is None:
            return dict(DEFAULT_FEES)
        return {key: _dec(getattr(config, key)) for key in DEFAULT_FEES}

    def _load_orders(
        self,
        store_id: UUID,
        window_start: datetime,
        window_end: datetime,
        filters: MetricsFilters,
    ) -> List[ShopifyOrder]:
        query = (
            self.db.query(ShopifyOrder)
            .options(selectinload(ShopifyOrder.line_items))
            .filter(
                ShopifyOrder.store_id == store_id,
                ShopifyOrder.order_created_at >= window_start,
                ShopifyOrder.order_created_at <= window_end,
            )
        )
        if filters.fulfillment == "fulfilled":
            query = query.filter(ShopifyOrder.fulfillment_status == ShopifyFulfillmentStatusEnum.fulfilled)
        elif filters.fulfillment == "unfulfilled":
            query = query.filter(
                (ShopifyOrder.fulfillment_status.is_(None))
                | (ShopifyOrder.fulfillment_status != ShopifyFulfillmentStatusEnum.fulfilled)
            )
        return query.all()

    def _variant_costs(self, store_id: UUID, variant_ids: List[str]) -> Dict[str, Optional[Decimal]]:
        if not variant_ids:
            return {}
        rows = (
            self.db.query(ShopifyProductVariant.external_variant_id, ShopifyProductVariant.cost_per_item)
            .join(ShopifyProduct, ShopifyProduct.id == ShopifyProductVariant.product_id)
            .filter(
                ShopifyProduct.store_id == store_id,
                ShopifyProductVariant.external_variant_id.in_(variant_ids),
            )
            .all()
        )
        return {variant_id: cost for variant_id, cost in rows}

    def calculate_cogs(self, store_id: UUID, orders: List[ShopifyOrder], default_cog_rate: Decimal) -> CogsResult:
        """Actual variant cost where known, `line revenue x default_cog_rate` otherwise."""
        line_items = [li for order in orders for li in order.line_items]
        variant_ids = sorted({li.external_variant_id for li in line_items if li.external_variant_id})
        costs = self._variant_costs(store_id, variant_ids)

        total = ZERO
        with_cost = 0
        for li in line_items:
            quantity = Decimal(li.quantity or 0)
            unit_cost = costs.get(li.external_variant_id) if li.external_variant_id else None
            if unit_cost is not None:
                total += _dec(unit_cost) * quantity
                with_cost += 1
            else:
                total += _dec(li.price) * quantity * default_cog_rate

        coverage = round(with_cost / len(line_items) * 100, 1) if line_items else 0.0
        return CogsResult(
            total=total,
            coverage_pct=coverage,
            method=cogs_method_for(coverage),
            items_with_cost=with_cost,
            items_total=len(line_items),
        )

    def calculate_shipping_costs(self, orders: List[ShopifyOrder], fulfillment: str) -> ShippingCostResult:
        """Label costs; orders without a label get the average of the known ones."""
        names = [clean_order_name(o.name) for o in orders if o.name]
        try:
            known = self.shipping_source.get_costs(names, fulfillment_filter=fulfillment)
        except ShippingSourceError as e:
            logger.warning(f"[METRICS] Shipping source unavailable, reporting $0: {e}")
            return ShippingCostResult(total=ZERO, method=SHIPPING_ERROR)

        matched = [known[n] for n in names if n in known]
        if not matched:
            return ShippingCostResult(total=ZERO, method=SHIPPING_NONE)

        total_known = sum(matched, ZERO)
        average = total_known / Decimal(len(matched))
        missing = len(orders) - len(matched)
        return ShippingCostResult(
            total=total_known + average * Decimal(missing),
            method=SHIPPING_ACTUAL if missing == 0 else SHIPPING_HYBRID,
            orders_with_cost=len(matched),
            average_cost=_money(average),
        )

    def compute_metrics(
        self,
        store_id: UUID,
        timeframe: Optional[str] = "30d",
        filters: Optional[MetricsFilters] = None,
        now: Optional[datetime] = None,
    ) -> FinancialSummary:
        """
        Compute the financial summary for a store.

        Parameters:
            store_id: Store UUID
            timeframe: "7d" | "30d" | "90d" | "1y" (unknown values mean 30d)
            filters: Fulfillment filter (default all)
            now: Window end in UTC (tests pass a fixed value)

        Returns:
            FinancialSummary with money values rounded to cents
        """
        filters = filters or MetricsFilters()
        days = parse_timeframe(timeframe)
        window_end = now or datetime.utcnow()
        window_start = window_end - timedelta(days=days)

        fees = self.get_fee_configuration(store_id)
        orders = self._load_orders(store_id, window_start, window_end, filters)

        order_count = len(orders)
        item_count = sum(li.quantity or 0 for o in orders for li in o.line_items)
        revenue = sum((_dec(o.total_price) for o in orders), ZERO)
        shipping_revenue = sum((_dec(o.total_shipping) for o in orders), ZERO)
        taxes = sum((_dec(o.total_tax) for o in orders), ZERO)
        discounts = sum((_dec(o.total_discounts) for o in orders), ZERO)
        refunds = sum((_dec(o.total_refunds) for o in orders), ZERO)

        gateway_fees = revenue * fees["payment_gateway_rate"]
        processing_fees = Decimal(order_count) * fees["processing_fee_per_order"]
        chargebacks = revenue * fees["chargeback_rate"]
        net_revenue = revenue - refunds - gateway_fees - processing_fees

        cogs = self.calculate_cogs(store_id, orders, fees["default_cog_rate"])
        shipping = self.calculate_shipping_costs(orders, filters.fulfillment)

        additional_breakdown: Dict[str, Decimal] = {}
        active_costs = self.db.query(AdditionalCost).filter(
            AdditionalCost.store_id == store_id,
            AdditionalCost.is_active.is_(True),
        ).all()
        for cost in active_costs:
            additional_breakdown[cost.name] = additional_cost_amount(cost, revenue, order_count, item_count)
        additional_costs = sum(additional_breakdown.values(), ZERO)

        subscription_breakdown: Dict[str, Decimal] = {}
        active_fees = self.db.query(SubscriptionFee).filter(
            SubscriptionFee.store_id == store_id,
            SubscriptionFee.is_active.is_(True),
        ).all()
        for fee in active_fees:
            subscription_breakdown[fee.name] = subscription_daily_rate(fee) * Decimal(days)
        subscription_costs = sum(subscription_breakdown.values(), ZERO)

        net_profit = net_revenue - cogs.total - additional_costs - subscription_costs - shipping.total
        aov = revenue / Decimal(order_count) if order_count else ZERO

        logger.info(
            "[METRICS] store=%s window=%dd orders=%d revenue=%.2f refunds=%.2f net_revenue=%.2f "
            "cogs=%.2f (%s, %.1f%%) shipping=%.2f (%s) net_profit=%.2f",
            store_id, days, order_count, revenue, refunds, net_revenue,
            cogs.total, cogs.method, cogs.coverage_pct, shipping.total, shipping.method, net_profit,
        )

        return FinancialSummary(
            timeframe_days=days,
            window_start=window_start,
            window_end=window_end,
            fulfillment=filters.fulfillment,
            order_count=order_count,
            item_count=item_count,
            revenue=_money(revenue),
            shipping_revenue=_money(shipping_revenue),
            taxes=_money(taxes),
            discounts=_money(discounts),
            refunds=_money(refunds),
            average_order_value=_money(aov),
            payment_gateway_fees=_money(gateway_fees),
            processing_fees=_money(processing_fees),
            chargebacks=_money(chargebacks),
            net_revenue=_money(net_revenue),
            cogs=_money(cogs.total),
            cogs_coverage_pct=cogs.coverage_pct,
            cogs_method=cogs.method,
            shipping_costs=_money(shipping.total),
            shipping_cost_method=shipping.method,
            additional_costs=_money(additional_costs),
            subscription_costs=_money(subscription_costs),
            net_profit=_money(net_profit),
            additional_cost_breakdown={k: _money(v) for k, v in additional_breakdown.items()},
            subscription_breakdown={k: _money(v) for k, v in subscription_breakdown.items()},
        )


def compute_metrics(
    db: Session,
    store_id: UUID,
    timeframe: Optional[str] = "30d",
    filters: Optional[MetricsFilters] = None,
    shipping_source: Optional[ShippingCostSource] = None,
    now: Optional[datetime] = None,
) -> FinancialSummary:
    """Module-level shortcut for FinancialMetricsService(db, shipping_source).compute_metrics(...)."""
    return FinancialMetricsService(db, shipping_source).compute_metrics(
        store_id, timeframe=timeframe, filters=filters, now=now
    )
