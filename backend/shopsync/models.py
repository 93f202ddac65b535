"""SQLAlchemy ORM models and enums.

This module defines the local mirror of Shopify store data (orders, line items,
products, variants), the per-(store, data type) sync status ledger, and the
store-scoped cost configuration tables used by the financial metrics service.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ShopifyFinancialStatusEnum(str, enum.Enum):
    """Shopify order financial status.

    WHAT: Represents payment state of an order
    WHY: Refund backfill targets refunded/partially_refunded orders only
    REFERENCES: https://shopify.dev/docs/api/admin-rest/2024-07/resources/order
    """
    pending = "pending"
    authorized = "authorized"
    partially_paid = "partially_paid"
    paid = "paid"
    partially_refunded = "partially_refunded"
    refunded = "refunded"
    voided = "voided"


class ShopifyFulfillmentStatusEnum(str, enum.Enum):
    """Shopify order fulfillment status (REST returns null for unfulfilled)."""
    unfulfilled = "unfulfilled"
    partial = "partial"
    fulfilled = "fulfilled"
    restocked = "restocked"


class SyncDataTypeEnum(str, enum.Enum):
    orders = "orders"
    products = "products"
    products_costs = "products_costs"
    refunds = "refunds"


class BillingTypeEnum(str, enum.Enum):
    monthly = "monthly"
    yearly = "yearly"


# Stores --------------------------------------------------------

class Store(Base):
    """A connected Shopify store.

    WHAT: Shop domain + Admin API token used by the sync service
    WHY: Every mirrored row, ledger entry and cost setting is store-scoped
    """
    __tablename__ = "stores"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_domain = Column(String, nullable=False, unique=True)  # e.g., "mystore.myshopify.com"
    access_token = Column(String, nullable=False)
    name = Column(String, nullable=True)
    currency = Column(String, nullable=False, default="USD")
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    orders = relationship("ShopifyOrder", back_populates="store", cascade="all, delete-orphan")
    products = relationship("ShopifyProduct", back_populates="store", cascade="all, delete-orphan")
    sync_statuses = relationship("SyncStatus", back_populates="store", cascade="all, delete-orphan")
    fee_configuration = relationship(
        "FeeConfiguration", back_populates="store", uselist=False, cascade="all, delete-orphan"
    )
    additional_costs = relationship("AdditionalCost", back_populates="store", cascade="all, delete-orphan")
    subscription_fees = relationship("SubscriptionFee", back_populates="store", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name or self.shop_domain}"


# Mirror --------------------------------------------------------

class ShopifyOrder(Base):
    """Mirror of a remote Shopify order.

    WHAT: Order totals, statuses, customer and payment descriptors
    WHY: Orders are the source of truth for revenue metrics
    NOTE: total_refunds is populated when the order is first inserted and is only
          changed afterwards by the refund backfill (see shopify_sync_service).
    """
    __tablename__ = "shopify_orders"
    __table_args__ = (
        UniqueConstraint("store_id", "external_order_id", name="uq_shopify_order"),
        Index("ix_shopify_orders_store_created", "store_id", "order_created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False)

    # Shopify identifiers
    external_order_id = Column(String, nullable=False)  # REST numeric id as string
    order_number = Column(Integer, nullable=True)  # 1001
    name = Column(String, nullable=True)  # "#1001"

    # Order totals (in shop currency)
    subtotal_price = Column(Numeric(18, 4), nullable=True)
    total_price = Column(Numeric(18, 4), nullable=False)
    total_shipping = Column(Numeric(18, 4), nullable=True)
    total_tax = Column(Numeric(18, 4), nullable=True)
    total_discounts = Column(Numeric(18, 4), nullable=True)
    total_refunds = Column(Numeric(18, 4), nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")

    # Order status
    financial_status = Column(
        Enum(ShopifyFinancialStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=True
    )
    fulfillment_status = Column(
        Enum(ShopifyFulfillmentStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=True
    )

    # Customer (denormalized, no customer table)
    customer_first_name = Column(String, nullable=True)
    customer_last_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)

    # Payment method descriptors
    payment_gateway = Column(String, nullable=True)  # e.g., "shopify_payments"
    processing_method = Column(String, nullable=True)  # e.g., "direct", "express"

    # Timestamps
    order_created_at = Column(DateTime, nullable=False)  # When order was placed in Shopify
    order_updated_at = Column(DateTime, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    store = relationship("Store", back_populates="orders")
    line_items = relationship("ShopifyOrderLineItem", back_populates="order", cascade="all, delete-orphan")

    def __str__(self):
        return f"Order {self.name or self.external_order_id} - ${self.total_price}"


class ShopifyOrderLineItem(Base):
    """Line item owned by exactly one order.

    Cost is not stored here; COGS joins to ShopifyProductVariant by
    external_variant_id at aggregation time.
    """
    __tablename__ = "shopify_order_line_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("shopify_orders.id", ondelete="CASCADE"), nullable=False)

    external_line_item_id = Column(String, nullable=False)
    external_product_id = Column(String, nullable=True)
    external_variant_id = Column(String, nullable=True)

    title = Column(String, nullable=False)
    variant_title = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(18, 4), nullable=False)  # Unit price
    total_discount = Column(Numeric(18, 4), nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("ShopifyOrder", back_populates="line_items")

    def __str__(self):
        return f"{self.quantity} x {self.title}"


class ShopifyProduct(Base):
    """Product catalog entry; cost lives on the variants."""
    __tablename__ = "shopify_products"
    __table_args__ = (
        UniqueConstraint("store_id", "external_product_id", name="uq_shopify_product"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False)

    external_product_id = Column(String, nullable=False)
    handle = Column(String, nullable=True)
    title = Column(String, nullable=False)
    product_type = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")  # active, archived, draft

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_synced_at = Column(DateTime, nullable=True)

    store = relationship("Store", back_populates="products")
    variants = relationship("ShopifyProductVariant", back_populates="product", cascade="all, delete-orphan")

    def __str__(self):
        return self.title


class ShopifyProductVariant(Base):
    """Product variant with cost of goods.

    WHAT: Per-variant price and cost_per_item
    WHY: COGS is resolved per line item through the variant
    NOTE: cost_per_item NULL means "no cost data"; 0 is a real zero-cost item.
    """
    __tablename__ = "shopify_product_variants"
    __table_args__ = (
        UniqueConstraint("product_id", "external_variant_id", name="uq_shopify_variant"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("shopify_products.id", ondelete="CASCADE"), nullable=False)

    external_variant_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    price = Column(Numeric(18, 4), nullable=True)
    compare_at_price = Column(Numeric(18, 4), nullable=True)
    cost_per_item = Column(Numeric(18, 4), nullable=True)
    inventory_quantity = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("ShopifyProduct", back_populates="variants")

    def __str__(self):
        return f"{self.title or self.external_variant_id} (cost={self.cost_per_item})"


# Sync ledger ---------------------------------------------------

class SyncStatus(Base):
    """Durable sync health record per (store, data type).

    WHAT: In-progress flag, heartbeat, last completion, last error, and the
          timeframe the running sync declared
    WHY: The only way outside observers (status endpoint, reaper) know whether
         a sync is alive. The row is a lease, not a lock.
    """
    __tablename__ = "sync_statuses"
    __table_args__ = (
        UniqueConstraint("store_id", "data_type", name="uq_sync_status_store_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False)
    data_type = Column(
        Enum(SyncDataTypeEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False
    )

    sync_in_progress = Column(Boolean, nullable=False, default=False)
    last_heartbeat = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    timeframe_days = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    store = relationship("Store", back_populates="sync_statuses")

    def __str__(self):
        state = "running" if self.sync_in_progress else "idle"
        return f"{self.data_type.value if self.data_type else '?'} sync ({state})"


# Cost configuration --------------------------------------------

class FeeConfiguration(Base):
    """Per-store fallback rates used when actual data is missing."""
    __tablename__ = "fee_configurations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False, unique=True)

    payment_gateway_rate = Column(Numeric(8, 6), nullable=False, default=0.029)
    processing_fee_per_order = Column(Numeric(12, 4), nullable=False, default=0.30)
    default_cog_rate = Column(Numeric(8, 6), nullable=False, default=0.40)
    chargeback_rate = Column(Numeric(8, 6), nullable=False, default=0.001)
    return_processing_rate = Column(Numeric(8, 6), nullable=False, default=0.05)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    store = relationship("Store", back_populates="fee_configuration")


class AdditionalCost(Base):
    """User-declared per-order / per-item cost.

    Percentages are stored as whole numbers (2.5 means 2.5%).
    Inactive rows are kept for audit and excluded from calculations.
    """
    __tablename__ = "additional_costs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False)

    name = Column(String, nullable=False)
    percentage_per_order = Column(Numeric(8, 4), nullable=False, default=0)
    percentage_per_item = Column(Numeric(8, 4), nullable=False, default=0)
    flat_rate_per_order = Column(Numeric(12, 4), nullable=False, default=0)
    flat_rate_per_item = Column(Numeric(12, 4), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    store = relationship("Store", back_populates="additional_costs")

    def __str__(self):
        return self.name


class SubscriptionFee(Base):
    """Recurring SaaS/app fee pro-rated daily into the reporting window."""
    __tablename__ = "subscription_fees"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id"), nullable=False)

    name = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    billing_type = Column(
        Enum(BillingTypeEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=BillingTypeEnum.monthly,
    )
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    store = relationship("Store", back_populates="subscription_fees")

    def __str__(self):
        return f"{self.name} (${self.amount}/{self.billing_type.value if self.billing_type else '?'})"
