"""HTTP tests for the sync and metrics endpoints."""

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from shopsync.models import ShopifyOrder, SyncDataTypeEnum
from shopsync.routers.metrics import get_shipping_source
from shopsync.services.shipping_costs import ShippingCostSource
from shopsync.services.shopify_client import RateLimitedError
from shopsync.services.sync.status_ledger import SyncStatusLedger


def _remote_order(external_id, total="100.00"):
    created = (datetime.utcnow() - timedelta(days=1)).strftime("%Y-%m-%dT%H:%M:%SZ")
    return {
        "external_order_id": external_id,
        "order_number": int(external_id),
        "name": f"#{external_id}",
        "total_price": Decimal(total),
        "currency": "USD",
        "financial_status": "paid",
        "fulfillment_status": "unfulfilled",
        "order_created_at": created,
        "order_updated_at": created,
        "refunds": [],
        "line_items": [],
    }


class _FakeShopifyClient:
    def __init__(self, orders):
        self.orders = orders

    async def get_orders(self, created_at_min=None, created_at_max=None, page_info=None, limit=250):
        return list(self.orders), None

    async def get_order_refunds(self, order_id):
        return []

    async def count_orders(self, created_at_min=None, created_at_max=None):
        return len(self.orders)

    async def get_products(self, cursor=None, limit=50):
        return [], None

    async def get_variant_costs(self, product_ids):
        return {}


@pytest.fixture
def remote(app, make_service):
    """Swap the app's sync service for one talking to an in-memory Shopify."""
    client = _FakeShopifyClient([_remote_order("1001"), _remote_order("1002", total="50.00")])
    app.state.sync_service = make_service(client, clock=datetime.utcnow)
    app.dependency_overrides[get_shipping_source] = lambda: ShippingCostSource(engine=None)
    return client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["circuit_breaker"]["state"] == "closed"


def test_start_order_sync_runs_in_background(client, remote, test_store, test_db_session):
    response = client.post(f"/stores/{test_store.id}/sync/orders", params={"timeframe_days": 30})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "accepted"
    assert body["timeframe_days"] == 30

    test_db_session.expire_all()
    assert test_db_session.query(ShopifyOrder).count() == 2
    entry = SyncStatusLedger(test_db_session).get(test_store.id, SyncDataTypeEnum.orders)
    assert entry.sync_in_progress is False
    assert entry.last_sync_at is not None


def test_start_order_sync_refused_when_running(client, remote, test_store, test_db_session):
    SyncStatusLedger(test_db_session).mark_started(test_store.id, SyncDataTypeEnum.orders, timeframe_days=30)

    response = client.post(f"/stores/{test_store.id}/sync/orders")

    assert response.status_code == 202
    assert response.json()["status"] == "already_in_progress"
    assert test_db_session.query(ShopifyOrder).count() == 0


def test_start_order_sync_refused_when_rate_limited(client, app, remote, test_store):
    for _ in range(3):
        app.state.sync_service.breaker.record_failure(RateLimitedError("throttled", status_code=429))

    response = client.post(f"/stores/{test_store.id}/sync/orders")

    body = response.json()
    assert body["status"] == "rate_limited"
    assert body["message"] == "rate limited, cooling down, retry in 10m"


def test_unknown_store_is_404(client, remote, test_db_session):
    response = client.post(f"/stores/{uuid4()}/sync/orders")
    assert response.status_code == 404


def test_sync_status(client, remote, test_store):
    client.post(f"/stores/{test_store.id}/sync/orders")

    response = client.get(f"/stores/{test_store.id}/sync/status", params={"timeframe": "30d"})

    assert response.status_code == 200
    body = response.json()
    assert body["orders_synced"] == 2
    assert body["orders_total"] == 2
    assert body["progress_pct"] == 100.0
    assert body["remaining"] == 0
    assert body["is_active"] is False
    assert body["is_needed"] is False


def test_stop_sync(client, remote, test_store, test_db_session):
    SyncStatusLedger(test_db_session).mark_started(test_store.id, SyncDataTypeEnum.orders)

    response = client.post(f"/stores/{test_store.id}/sync/stop", params={"data_type": "orders"})

    assert response.status_code == 200
    assert response.json()["stopped"] is True
    again = client.post(f"/stores/{test_store.id}/sync/stop")
    assert again.json()["stopped"] is False


def test_cleanup_lists_then_reaps_ghosts(client, remote, test_store, test_db_session):
    ledger = SyncStatusLedger(test_db_session, clock=lambda: datetime.utcnow() - timedelta(hours=1))
    ledger.mark_started(test_store.id, SyncDataTypeEnum.products)

    listing = client.get("/sync/cleanup")
    assert listing.status_code == 200
    assert listing.json()["cleaned_count"] == 0
    assert listing.json()["details"][0]["data_type"] == "products"

    reaped = client.post("/sync/cleanup")
    assert reaped.json()["cleaned_count"] == 1
    assert reaped.json()["details"][0]["reason"] == "stale heartbeat"


def test_refund_backfill_endpoint(client, remote, test_store):
    response = client.post(f"/stores/{test_store.id}/sync/refunds/backfill")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["checked"] == 0


def test_product_sync_endpoint(client, remote, test_store):
    response = client.post(f"/stores/{test_store.id}/sync/products")

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_metrics_endpoint(client, remote, test_store):
    client.post(f"/stores/{test_store.id}/sync/orders")

    response = client.get(f"/stores/{test_store.id}/metrics", params={"timeframe": "30d"})

    assert response.status_code == 200
    body = response.json()
    assert body["order_count"] == 2
    assert body["revenue"] == 150.0
    assert body["net_revenue"] == 145.05
    assert body["shipping_cost_method"] == "none"
    assert body["refunds_by_order_date"] is True


def test_metrics_rejects_unknown_fulfillment_filter(client, remote, test_store):
    response = client.get(f"/stores/{test_store.id}/metrics", params={"fulfillment": "shipped"})
    assert response.status_code == 422


def test_resume_restarts_dead_order_sync(client, remote, test_store, test_db_session):
    stale = SyncStatusLedger(test_db_session, clock=lambda: datetime.utcnow() - timedelta(hours=1))
    stale.mark_started(test_store.id, SyncDataTypeEnum.orders, timeframe_days=7)

    response = client.post("/sync/resume")

    assert response.status_code == 200
    body = response.json()
    assert body["cleaned_count"] == 1
    assert body["resumed_count"] == 1
    assert body["resumed"][0]["timeframe_days"] == 7
    assert body["resumed"][0]["status"] == "accepted"

    test_db_session.expire_all()
    assert test_db_session.query(ShopifyOrder).count() == 2
    entry = SyncStatusLedger(test_db_session).get(test_store.id, SyncDataTypeEnum.orders)
    assert entry.sync_in_progress is False
    assert entry.last_sync_at is not None


def test_resume_with_nothing_stuck(client, remote):
    response = client.post("/sync/resume")

    assert response.json() == {"cleaned_count": 0, "resumed_count": 0, "resumed": []}
