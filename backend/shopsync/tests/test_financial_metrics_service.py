"""Tests for the financial metrics aggregator."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import insert

from shopsync.database import build_engine
from shopsync.models import (
    AdditionalCost,
    BillingTypeEnum,
    FeeConfiguration,
    ShopifyFulfillmentStatusEnum,
    ShopifyOrder,
    ShopifyOrderLineItem,
    ShopifyProduct,
    ShopifyProductVariant,
    SubscriptionFee,
)
from shopsync.services.financial_metrics_service import (
    FinancialMetricsService,
    MetricsFilters,
    additional_cost_amount,
    compute_metrics,
    subscription_daily_rate,
)
from shopsync.services.shipping_costs import ShippingCostSource, shipping_metadata, shipping_orders


def _add_order(db, store, number, total="100.00", created_at=None, refunds="0", fulfillment=None,
               line_items=()):
    order = ShopifyOrder(
        store_id=store.id,
        external_order_id=str(number),
        name=f"#{number}",
        total_price=Decimal(total),
        total_refunds=Decimal(refunds),
        fulfillment_status=fulfillment,
        order_created_at=created_at,
    )
    order.line_items = [
        ShopifyOrderLineItem(
            external_line_item_id=f"li-{number}-{i}",
            external_variant_id=variant_id,
            title="Item",
            quantity=quantity,
            price=Decimal(price),
        )
        for i, (variant_id, quantity, price) in enumerate(line_items)
    ]
    db.add(order)
    db.commit()
    return order


def _add_variants(db, store, costs):
    product = ShopifyProduct(store_id=store.id, external_product_id="p-1", title="Widget")
    product.variants = [
        ShopifyProductVariant(external_variant_id=variant_id, cost_per_item=cost)
        for variant_id, cost in costs.items()
    ]
    db.add(product)
    db.commit()


@pytest.fixture
def recent(fake_clock):
    return fake_clock.now - timedelta(days=1)


@pytest.fixture
def shipping_engine():
    engine = build_engine("sqlite://")
    shipping_metadata.create_all(engine)
    yield engine
    engine.dispose()


def _add_label(engine, order_number, status, amount, raw_order_data=None):
    with engine.begin() as conn:
        conn.execute(insert(shipping_orders).values(
            order_number=order_number,
            order_status=status,
            raw_order_data=raw_order_data if raw_order_data is not None else {"shippingAmount": amount},
        ))


# ============================================================================
# COGS
# ============================================================================

def _cogs_fixture(db, store, created_at, known):
    """Ten single-unit $10 line items; the first `known` variants have a $4 cost."""
    _add_variants(db, store, {f"v-{i}": Decimal("4.00") for i in range(known)})
    _add_order(db, store, 1001, total="100.00", created_at=created_at,
               line_items=[(f"v-{i}", 1, "10.00") for i in range(10)])


def test_cogs_hybrid_coverage(test_db_session, test_store, recent):
    _cogs_fixture(test_db_session, test_store, recent, known=3)
    orders = test_db_session.query(ShopifyOrder).all()

    result = FinancialMetricsService(test_db_session).calculate_cogs(test_store.id, orders, Decimal("0.40"))

    assert result.coverage_pct == 30.0
    assert result.method == "hybrid"
    # 3 x $4 actual + 7 x $10 x 0.40 estimated
    assert result.total == Decimal("40.00")


def test_cogs_fully_estimated(test_db_session, test_store, recent):
    _cogs_fixture(test_db_session, test_store, recent, known=0)
    orders = test_db_session.query(ShopifyOrder).all()

    result = FinancialMetricsService(test_db_session).calculate_cogs(test_store.id, orders, Decimal("0.40"))

    assert result.coverage_pct == 0.0
    assert result.method == "estimated"
    assert result.total == Decimal("40.00")


def test_cogs_fully_actual(test_db_session, test_store, recent):
    _cogs_fixture(test_db_session, test_store, recent, known=10)
    orders = test_db_session.query(ShopifyOrder).all()

    result = FinancialMetricsService(test_db_session).calculate_cogs(test_store.id, orders, Decimal("0.40"))

    assert result.coverage_pct == 100.0
    assert result.method == "actual"


def test_cogs_without_line_items(test_db_session, test_store):
    result = FinancialMetricsService(test_db_session).calculate_cogs(test_store.id, [], Decimal("0.40"))

    assert result.total == Decimal("0")
    assert result.coverage_pct == 0.0
    assert result.method == "estimated"


# ============================================================================
# Fees
# ============================================================================

def test_default_fees_on_ten_orders(test_db_session, test_store, fake_clock, recent):
    for number in range(1, 11):
        _add_order(test_db_session, test_store, number, total="100.00", created_at=recent)

    summary = compute_metrics(test_db_session, test_store.id, timeframe="30d", now=fake_clock.now)

    assert summary.order_count == 10
    assert summary.revenue == Decimal("1000.00")
    assert summary.payment_gateway_fees == Decimal("29.00")
    assert summary.processing_fees == Decimal("3.00")
    assert summary.chargebacks == Decimal("1.00")
    assert summary.net_revenue == Decimal("968.00")
    assert summary.average_order_value == Decimal("100.00")


def test_store_fee_configuration_overrides_defaults(test_db_session, test_store, fake_clock, recent):
    test_db_session.add(FeeConfiguration(
        store_id=test_store.id,
        payment_gateway_rate=Decimal("0.02"),
        processing_fee_per_order=Decimal("0.50"),
    ))
    test_db_session.commit()
    _add_order(test_db_session, test_store, 1, total="200.00", created_at=recent)

    summary = compute_metrics(test_db_session, test_store.id, now=fake_clock.now)

    assert summary.payment_gateway_fees == Decimal("4.00")
    assert summary.processing_fees == Decimal("0.50")


def test_orders_outside_window_are_ignored(test_db_session, test_store, fake_clock, recent):
    _add_order(test_db_session, test_store, 1, total="100.00", created_at=recent)
    _add_order(test_db_session, test_store, 2, total="500.00", created_at=fake_clock.now - timedelta(days=10))

    summary = compute_metrics(test_db_session, test_store.id, timeframe="7d", now=fake_clock.now)

    assert summary.timeframe_days == 7
    assert summary.order_count == 1
    assert summary.revenue == Decimal("100.00")


def test_fulfillment_filter(test_db_session, test_store, fake_clock, recent):
    _add_order(test_db_session, test_store, 1, created_at=recent, fulfillment=ShopifyFulfillmentStatusEnum.fulfilled)
    _add_order(test_db_session, test_store, 2, created_at=recent, fulfillment=ShopifyFulfillmentStatusEnum.partial)
    _add_order(test_db_session, test_store, 3, created_at=recent, fulfillment=None)

    fulfilled = compute_metrics(
        test_db_session, test_store.id, filters=MetricsFilters(fulfillment="fulfilled"), now=fake_clock.now
    )
    unfulfilled = compute_metrics(
        test_db_session, test_store.id, filters=MetricsFilters(fulfillment="unfulfilled"), now=fake_clock.now
    )

    assert fulfilled.order_count == 1
    assert unfulfilled.order_count == 2


def test_invalid_fulfillment_filter():
    with pytest.raises(ValueError):
        MetricsFilters(fulfillment="shipped")


# ============================================================================
# Shipping costs
# ============================================================================

def test_shipping_average_fills_missing_orders(test_db_session, test_store, fake_clock, recent, shipping_engine):
    for number in (1001, 1002, 1003, 1004):
        _add_order(test_db_session, test_store, number, created_at=recent)
    _add_label(shipping_engine, "1001", "shipped", 10)
    _add_label(shipping_engine, "1002", "delivered", "20.00")
    _add_label(shipping_engine, "1003", "awaiting_shipment", 99)

    summary = compute_metrics(
        test_db_session, test_store.id, shipping_source=ShippingCostSource(shipping_engine), now=fake_clock.now
    )

    # 10 + 20 known, 2 orders filled with the $15 average
    assert summary.shipping_costs == Decimal("60.00")
    assert summary.shipping_cost_method == "hybrid"


def test_shipping_all_orders_known(test_db_session, test_store, fake_clock, recent, shipping_engine):
    _add_order(test_db_session, test_store, 1001, created_at=recent)
    _add_label(shipping_engine, "1001", "shipped", 7.5)

    summary = compute_metrics(
        test_db_session, test_store.id, shipping_source=ShippingCostSource(shipping_engine), now=fake_clock.now
    )

    assert summary.shipping_costs == Decimal("7.50")
    assert summary.shipping_cost_method == "actual"


def test_shipping_none_without_source(test_db_session, test_store, fake_clock, recent):
    _add_order(test_db_session, test_store, 1001, created_at=recent)

    summary = compute_metrics(test_db_session, test_store.id, now=fake_clock.now)

    assert summary.shipping_costs == Decimal("0.00")
    assert summary.shipping_cost_method == "none"


def test_shipping_none_for_unfulfilled_filter(test_db_session, test_store, fake_clock, recent, shipping_engine):
    _add_order(test_db_session, test_store, 1001, created_at=recent)
    _add_label(shipping_engine, "1001", "shipped", 10)

    summary = compute_metrics(
        test_db_session,
        test_store.id,
        filters=MetricsFilters(fulfillment="unfulfilled"),
        shipping_source=ShippingCostSource(shipping_engine),
        now=fake_clock.now,
    )

    assert summary.shipping_cost_method == "none"


def test_shipping_error_does_not_fail_metrics(test_db_session, test_store, fake_clock, recent):
    _add_order(test_db_session, test_store, 1001, created_at=recent)
    broken = build_engine("sqlite://")  # no orders table

    summary = compute_metrics(
        test_db_session, test_store.id, shipping_source=ShippingCostSource(broken), now=fake_clock.now
    )

    assert summary.shipping_costs == Decimal("0.00")
    assert summary.shipping_cost_method == "error"
    assert summary.revenue == Decimal("100.00")


def test_shipping_reads_string_encoded_payloads(test_db_session, test_store, fake_clock, recent, shipping_engine):
    for number in (1001, 1002):
        _add_order(test_db_session, test_store, number, created_at=recent)
    _add_label(shipping_engine, "1001", "shipped", None, raw_order_data='{"shippingAmount": "5.00"}')
    _add_label(shipping_engine, "1002", "shipped", None, raw_order_data=["not", "a", "payload"])

    summary = compute_metrics(
        test_db_session, test_store.id, shipping_source=ShippingCostSource(shipping_engine), now=fake_clock.now
    )

    # 1002 has no usable label and is filled with the $5 average
    assert summary.shipping_costs == Decimal("10.00")
    assert summary.shipping_cost_method == "hybrid"


class _ExplodingEngine:
    def connect(self):
        raise RuntimeError("driver crashed")


def test_unexpected_shipping_failure_is_reported_as_error(test_db_session, test_store, fake_clock, recent):
    _add_order(test_db_session, test_store, 1001, created_at=recent)

    summary = compute_metrics(
        test_db_session, test_store.id, shipping_source=ShippingCostSource(_ExplodingEngine()), now=fake_clock.now
    )

    assert summary.shipping_costs == Decimal("0.00")
    assert summary.shipping_cost_method == "error"


# ============================================================================
# Additional costs & subscriptions
# ============================================================================

def test_additional_cost_formula():
    cost = AdditionalCost(
        name="Packaging",
        percentage_per_order=Decimal("1"),
        percentage_per_item=Decimal("0.1"),
        flat_rate_per_order=Decimal("1.00"),
        flat_rate_per_item=Decimal("0.50"),
    )

    # 1000 x 1% + 10 x 1000 x 0.1% + 10 x $1 + 10 x $0.50
    assert additional_cost_amount(cost, Decimal("1000"), order_count=10, item_count=10) == Decimal("45")


def test_inactive_additional_costs_are_excluded(test_db_session, test_store, fake_clock, recent):
    _add_order(test_db_session, test_store, 1, total="100.00", created_at=recent,
               line_items=[("v-x", 2, "50.00")])
    test_db_session.add_all([
        AdditionalCost(store_id=test_store.id, name="Packaging", flat_rate_per_order=Decimal("2.00")),
        AdditionalCost(store_id=test_store.id, name="Old", flat_rate_per_order=Decimal("9.00"), is_active=False),
    ])
    test_db_session.commit()

    summary = compute_metrics(test_db_session, test_store.id, now=fake_clock.now)

    assert summary.additional_costs == Decimal("2.00")
    assert summary.additional_cost_breakdown == {"Packaging": Decimal("2.00")}


def test_subscription_daily_rates():
    monthly = SubscriptionFee(name="App", amount=Decimal("36.50"), billing_type=BillingTypeEnum.monthly)
    yearly = SubscriptionFee(name="Theme", amount=Decimal("365"), billing_type=BillingTypeEnum.yearly)

    assert (subscription_daily_rate(monthly) * 30).quantize(Decimal("0.01")) == Decimal("36.00")
    assert subscription_daily_rate(yearly) * 30 == Decimal("30")


def test_subscriptions_scale_with_window(test_db_session, test_store, fake_clock):
    test_db_session.add_all([
        SubscriptionFee(store_id=test_store.id, name="App", amount=Decimal("36.50"),
                        billing_type=BillingTypeEnum.monthly),
        SubscriptionFee(store_id=test_store.id, name="Theme", amount=Decimal("365.00"),
                        billing_type=BillingTypeEnum.yearly),
        SubscriptionFee(store_id=test_store.id, name="Cancelled", amount=Decimal("100.00"),
                        billing_type=BillingTypeEnum.monthly, is_active=False),
    ])
    test_db_session.commit()

    summary = compute_metrics(test_db_session, test_store.id, timeframe="30d", now=fake_clock.now)

    assert summary.subscription_costs == Decimal("66.00")
    assert summary.net_profit == Decimal("-66.00")


# ============================================================================
# End to end
# ============================================================================

def test_net_profit_derivation(test_db_session, test_store, fake_clock, recent):
    _add_variants(test_db_session, test_store, {"v-1": Decimal("20.00")})
    _add_order(test_db_session, test_store, 1, total="100.00", created_at=recent,
               line_items=[("v-1", 1, "100.00")])
    _add_order(test_db_session, test_store, 2, total="50.00", created_at=recent, refunds="12.50",
               line_items=[("v-unknown", 1, "50.00")])

    summary = compute_metrics(test_db_session, test_store.id, now=fake_clock.now)

    assert summary.revenue == Decimal("150.00")
    assert summary.refunds == Decimal("12.50")
    assert summary.refunds_by_order_date is True
    assert summary.net_revenue == Decimal("132.55")
    # $20 actual + $50 x 0.40 estimated
    assert summary.cogs == Decimal("40.00")
    assert summary.cogs_method == "hybrid"
    assert summary.cogs_coverage_pct == 50.0
    assert summary.item_count == 2
    assert summary.net_profit == Decimal("92.55")
