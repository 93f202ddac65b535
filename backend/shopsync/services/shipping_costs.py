"""Shipping label costs from the fulfillment database.

WHAT:
    Read-only access to the secondary database the fulfillment tool writes
    shipping labels into. Table `orders`:
        order_number    "1001" (Shopify order name without "#")
        order_status    "awaiting_shipment" | "shipped" | "delivered" | ...
        raw_order_data  JSON, label cost under "shippingAmount"

WHY:
    Shopify only knows what the customer paid for shipping, not what the label
    cost. The metrics service treats this source as optional: without a
    configured URL it reports shipping method "none", and a failing source is
    reported as "error" instead of failing the whole metrics request.

REFERENCES:
    - shopsync/services/financial_metrics_service.py
    - shopsync/database.py (primary engine, same build_engine settings)
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import JSON, Column, MetaData, String, Table, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from shopsync.services.shopify_client import to_decimal

logger = logging.getLogger(__name__)

SHIPPED_STATUSES = {"shipped", "delivered"}
QUERY_CHUNK_SIZE = 500

shipping_metadata = MetaData()

shipping_orders = Table(
    "orders",
    shipping_metadata,
    Column("order_number", String, primary_key=True),
    Column("order_status", String),
    Column("raw_order_data", JSON),
)


class ShippingSourceError(Exception):
    """The fulfillment database could not be read."""


def clean_order_name(name: Optional[str]) -> str:
    """"#1001" -> "1001" (the fulfillment tool stores names without the hash)."""
    return (name or "").replace("#", "").strip()


def parse_raw_order_data(raw: Any) -> Optional[Dict[str, Any]]:
    """The label payload as a dict. Some rows hold it JSON-encoded twice (a string); anything else is unusable."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    return raw if isinstance(raw, dict) else None


class ShippingCostSource:
    """
    Shipping label cost lookup keyed by order name.

    Usage:
        source = ShippingCostSource.from_url(settings.SHIPPING_DATABASE_URL)
        costs = source.get_costs(["#1001", "#1002"], fulfillment_filter="all")
    """

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: Optional[str]) -> "ShippingCostSource":
        if not database_url:
            logger.info("[SHIPPING] Shipping database not configured; shipping costs will be $0")
            return cls(engine=None)

        from shopsync.database import build_engine
        return cls(engine=build_engine(database_url))

    @property
    def enabled(self) -> bool:
        return self.engine is not None

    def get_costs(self, order_names: Iterable[str], fulfillment_filter: str = "all") -> Dict[str, Decimal]:
        """Label cost per cleaned order name.

        Filtering:
            - "unfulfilled": no costs at all (labels may exist but nothing shipped)
            - "fulfilled" / "all": only rows whose order_status is shipped or delivered

        Raises:
            ShippingSourceError: If the database cannot be read
        """
        names = sorted({clean_order_name(n) for n in order_names if clean_order_name(n)})
        if not self.enabled or not names or fulfillment_filter == "unfulfilled":
            return {}

        costs: Dict[str, Decimal] = {}
        try:
            with self.engine.connect() as conn:
                for start in range(0, len(names), QUERY_CHUNK_SIZE):
                    chunk: List[str] = names[start:start + QUERY_CHUNK_SIZE]
                    rows = conn.execute(
                        select(
                            shipping_orders.c.order_number,
                            shipping_orders.c.order_status,
                            shipping_orders.c.raw_order_data,
                        ).where(shipping_orders.c.order_number.in_(chunk))
                    )
                    for order_number, order_status, raw_order_data in rows:
                        if order_status not in SHIPPED_STATUSES:
                            continue
                        payload = parse_raw_order_data(raw_order_data)
                        if payload is None:
                            logger.warning(f"[SHIPPING] Unreadable label payload for order {order_number}, skipping")
                            continue
                        amount = to_decimal(payload.get("shippingAmount")) or Decimal("0")
                        costs[str(order_number)] = costs.get(str(order_number), Decimal("0")) + amount
        except SQLAlchemyError as e:
            logger.error(f"[SHIPPING] Failed to read shipping costs: {e}")
            raise ShippingSourceError(str(e)) from e
        except Exception as e:
            logger.error(f"[SHIPPING] Unexpected error reading shipping costs: {e}")
            raise ShippingSourceError(str(e)) from e

        logger.debug(f"[SHIPPING] Found label costs for {len(costs)}/{len(names)} orders")
        return costs
