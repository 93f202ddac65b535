"""Create shopsync tables (stores, order mirror, products, sync ledger, cost settings)

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    Creates the full schema:
    - stores: connected Shopify stores
    - shopify_orders / shopify_order_line_items: local order mirror
    - shopify_products / shopify_product_variants: catalog with cost_per_item
    - sync_statuses: per-(store, data type) sync ledger
    - fee_configurations / additional_costs / subscription_fees: cost settings

WHY:
    The metrics service reads only the local mirror; the sync engine keeps it
    converged with Shopify and records its liveness in sync_statuses.

REFERENCES:
    - shopsync/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


financial_status_enum = sa.Enum(
    'pending', 'authorized', 'partially_paid', 'paid',
    'partially_refunded', 'refunded', 'voided',
    name='shopifyfinancialstatusenum',
)
fulfillment_status_enum = sa.Enum(
    'unfulfilled', 'partial', 'fulfilled', 'restocked',
    name='shopifyfulfillmentstatusenum',
)
sync_data_type_enum = sa.Enum('orders', 'products', 'products_costs', 'refunds', name='syncdatatypeenum')
billing_type_enum = sa.Enum('monthly', 'yearly', name='billingtypeenum')


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Stores
    # =========================================================================
    op.create_table(
        'stores',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_domain', sa.String(), nullable=False, unique=True),
        sa.Column('access_token', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    # =========================================================================
    # STEP 2: Order mirror
    # =========================================================================
    # total_refunds is written on first insert and by the refund backfill only
    op.create_table(
        'shopify_orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('external_order_id', sa.String(), nullable=False),
        sa.Column('order_number', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('subtotal_price', sa.Numeric(18, 4), nullable=True),
        sa.Column('total_price', sa.Numeric(18, 4), nullable=False),
        sa.Column('total_shipping', sa.Numeric(18, 4), nullable=True),
        sa.Column('total_tax', sa.Numeric(18, 4), nullable=True),
        sa.Column('total_discounts', sa.Numeric(18, 4), nullable=True),
        sa.Column('total_refunds', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('financial_status', financial_status_enum, nullable=True),
        sa.Column('fulfillment_status', fulfillment_status_enum, nullable=True),
        sa.Column('customer_first_name', sa.String(), nullable=True),
        sa.Column('customer_last_name', sa.String(), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('payment_gateway', sa.String(), nullable=True),
        sa.Column('processing_method', sa.String(), nullable=True),
        sa.Column('order_created_at', sa.DateTime(), nullable=False),
        sa.Column('order_updated_at', sa.DateTime(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('store_id', 'external_order_id', name='uq_shopify_order'),
    )
    op.create_index('ix_shopify_orders_store_created', 'shopify_orders', ['store_id', 'order_created_at'])

    op.create_table(
        'shopify_order_line_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'order_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('shopify_orders.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('external_line_item_id', sa.String(), nullable=False),
        sa.Column('external_product_id', sa.String(), nullable=True),
        sa.Column('external_variant_id', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('variant_title', sa.String(), nullable=True),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('price', sa.Numeric(18, 4), nullable=False),
        sa.Column('total_discount', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_shopify_order_line_items_order_id', 'shopify_order_line_items', ['order_id'])

    # =========================================================================
    # STEP 3: Products and variants
    # =========================================================================
    op.create_table(
        'shopify_products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('external_product_id', sa.String(), nullable=False),
        sa.Column('handle', sa.String(), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('product_type', sa.String(), nullable=True),
        sa.Column('vendor', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('store_id', 'external_product_id', name='uq_shopify_product'),
    )

    op.create_table(
        'shopify_product_variants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'product_id', postgresql.UUID(as_uuid=True),
            sa.ForeignKey('shopify_products.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('external_variant_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=True),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(18, 4), nullable=True),
        sa.Column('compare_at_price', sa.Numeric(18, 4), nullable=True),
        sa.Column('cost_per_item', sa.Numeric(18, 4), nullable=True),
        sa.Column('inventory_quantity', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('product_id', 'external_variant_id', name='uq_shopify_variant'),
    )
    op.create_index(
        'ix_shopify_product_variants_external_id', 'shopify_product_variants', ['external_variant_id']
    )

    # =========================================================================
    # STEP 4: Sync ledger
    # =========================================================================
    op.create_table(
        'sync_statuses',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('data_type', sync_data_type_enum, nullable=False),
        sa.Column('sync_in_progress', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_heartbeat', sa.DateTime(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('timeframe_days', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('store_id', 'data_type', name='uq_sync_status_store_type'),
    )

    # =========================================================================
    # STEP 5: Cost settings
    # =========================================================================
    op.create_table(
        'fee_configurations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id'), nullable=False, unique=True,
        ),
        sa.Column('payment_gateway_rate', sa.Numeric(8, 6), nullable=False, server_default='0.029'),
        sa.Column('processing_fee_per_order', sa.Numeric(12, 4), nullable=False, server_default='0.30'),
        sa.Column('default_cog_rate', sa.Numeric(8, 6), nullable=False, server_default='0.40'),
        sa.Column('chargeback_rate', sa.Numeric(8, 6), nullable=False, server_default='0.001'),
        sa.Column('return_processing_rate', sa.Numeric(8, 6), nullable=False, server_default='0.05'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'additional_costs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('percentage_per_order', sa.Numeric(8, 4), nullable=False, server_default='0'),
        sa.Column('percentage_per_item', sa.Numeric(8, 4), nullable=False, server_default='0'),
        sa.Column('flat_rate_per_order', sa.Numeric(12, 4), nullable=False, server_default='0'),
        sa.Column('flat_rate_per_item', sa.Numeric(12, 4), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'subscription_fees',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('billing_type', billing_type_enum, nullable=False, server_default='monthly'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    # Drop tables in reverse order (respect foreign keys)
    op.drop_table('subscription_fees')
    op.drop_table('additional_costs')
    op.drop_table('fee_configurations')
    op.drop_table('sync_statuses')
    op.drop_index('ix_shopify_product_variants_external_id', table_name='shopify_product_variants')
    op.drop_table('shopify_product_variants')
    op.drop_table('shopify_products')
    op.drop_index('ix_shopify_order_line_items_order_id', table_name='shopify_order_line_items')
    op.drop_table('shopify_order_line_items')
    op.drop_index('ix_shopify_orders_store_created', table_name='shopify_orders')
    op.drop_table('shopify_orders')
    op.drop_table('stores')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS billingtypeenum')
    op.execute('DROP TYPE IF EXISTS syncdatatypeenum')
    op.execute('DROP TYPE IF EXISTS shopifyfulfillmentstatusenum')
    op.execute('DROP TYPE IF EXISTS shopifyfinancialstatusenum')
