"""marketplace core tables

Revision ID: 0001_marketplace_core
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_marketplace_core'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = sa.Enum('customer', 'vendor', 'admin', name='user_role_enum')
webhook_provider = sa.Enum('identity', 'stripe', name='webhook_provider_enum')
product_status = sa.Enum('draft', 'active', 'archived', name='store_product_status_enum')
movement_type = sa.Enum(
    'restock', 'reservation', 'release', name='store_inventory_movement_type_enum'
)
order_status = sa.Enum(
    'pending', 'confirmed', 'processing', 'shipped', 'delivered', 'cancelled',
    name='store_order_status_enum',
)
payment_status = sa.Enum(
    'pending', 'processing', 'completed', 'failed', 'refunded',
    name='store_payment_status_enum',
)
payout_status = sa.Enum('pending', 'paid', 'failed', name='payout_status_enum')

JSONType = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _timestamps(updated: bool = True) -> list:
    columns = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=True)]
    if updated:
        columns.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True))
    return columns


def upgrade() -> None:
    """Upgrade schema - identity mirror, catalog, inventory, orders, payouts."""

    # Identity
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('avatar_url', sa.String(length=512), nullable=True),
        sa.Column('role', user_role, server_default='customer', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_external_id', 'users', ['external_id'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'customer_profiles',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('phone', sa.String(length=50), nullable=True),
        sa.Column('preferences', JSONType, nullable=True),
        sa.Column('total_spent', sa.Numeric(12, 2), server_default='0', nullable=True),
        sa.Column('loyalty_points', sa.Integer(), server_default='0', nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )

    op.create_table(
        'vendors',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('store_name', sa.String(length=200), nullable=False),
        sa.Column('slug', sa.String(length=200), nullable=False),
        sa.Column('payout_account_id', sa.String(length=255), nullable=True),
        sa.Column('commission_rate', sa.Numeric(5, 4), server_default='0.1000', nullable=True),
        sa.Column('is_approved', sa.Boolean(), server_default='false', nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.UniqueConstraint('slug'),
    )

    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('provider', webhook_provider, nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_provider_event'),
    )

    # Catalog
    op.create_table(
        'store_products',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('vendor_id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=100), nullable=True),
        sa.Column('base_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', product_status, server_default='active', nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_store_products_vendor_id', 'store_products', ['vendor_id'])
    op.create_index('ix_store_products_category', 'store_products', ['category'])

    op.create_table(
        'store_product_variants',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=True),
        sa.Column('price_override', sa.Numeric(12, 2), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(['product_id'], ['store_products.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku'),
    )
    op.create_index(
        'ix_store_product_variants_product_id', 'store_product_variants', ['product_id']
    )

    # Inventory
    op.create_table(
        'store_inventory_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('quantity_on_hand', sa.Integer(), server_default='0', nullable=False),
        sa.Column('low_stock_threshold', sa.Integer(), server_default='10', nullable=True),
        sa.Column('last_restock_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('quantity_on_hand >= 0', name='non_negative_stock'),
        sa.ForeignKeyConstraint(['product_id'], ['store_products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(
            ['variant_id'], ['store_product_variants.id'], ondelete='CASCADE'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'variant_id', name='uq_inventory_product_variant'),
    )
    op.create_index(
        'ix_store_inventory_items_product_id', 'store_inventory_items', ['product_id']
    )

    op.create_table(
        'store_inventory_movements',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('movement_type', movement_type, nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reference', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('performed_by', sa.String(length=255), nullable=True),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_store_inventory_movements_product_id',
        'store_inventory_movements',
        ['product_id'],
    )
    op.create_index(
        'ix_store_inventory_movements_reference',
        'store_inventory_movements',
        ['reference'],
    )

    # Cart and orders
    op.create_table(
        'store_cart_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('quantity > 0', name='positive_cart_quantity'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['product_id'], ['store_products.id']),
        sa.ForeignKeyConstraint(['variant_id'], ['store_product_variants.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'user_id', 'product_id', 'variant_id', name='unique_cart_product_variant'
        ),
    )
    op.create_index('ix_store_cart_items_user_id', 'store_cart_items', ['user_id'])

    op.create_table(
        'store_orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_number', sa.String(length=24), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('vendor_id', sa.Uuid(), nullable=False),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('status', order_status, server_default='pending', nullable=False),
        sa.Column('payment_status', payment_status, server_default='pending', nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('shipping_cost', sa.Numeric(12, 2), server_default='0', nullable=True),
        sa.Column('tax', sa.Numeric(12, 2), server_default='0', nullable=True),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('shipping_address_id', sa.String(length=255), nullable=True),
        sa.Column('billing_address_id', sa.String(length=255), nullable=True),
        sa.Column('payment_method_id', sa.String(length=255), nullable=True),
        sa.Column('tracking_number', sa.String(length=100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('subtotal >= 0', name='non_negative_subtotal'),
        sa.CheckConstraint('shipping_cost >= 0', name='non_negative_shipping'),
        sa.CheckConstraint('tax >= 0', name='non_negative_tax'),
        sa.CheckConstraint('total >= 0', name='non_negative_total'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'payment_intent_id', 'vendor_id', name='uq_store_orders_intent_vendor'
        ),
    )
    op.create_index('ix_store_orders_order_number', 'store_orders', ['order_number'], unique=True)
    op.create_index('ix_store_orders_user_id', 'store_orders', ['user_id'])
    op.create_index('ix_store_orders_vendor_id', 'store_orders', ['vendor_id'])
    op.create_index('ix_store_orders_payment_intent_id', 'store_orders', ['payment_intent_id'])
    op.create_index('ix_store_orders_vendor_status', 'store_orders', ['vendor_id', 'status'])

    op.create_table(
        'store_order_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('variant_id', sa.Uuid(), nullable=True),
        sa.Column('product_title', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint('quantity > 0', name='positive_item_quantity'),
        sa.ForeignKeyConstraint(['order_id'], ['store_orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_store_order_items_order_id', 'store_order_items', ['order_id'])

    op.create_table(
        'store_order_status_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('status', order_status, nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('actor_id', sa.String(length=255), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(['order_id'], ['store_orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_store_order_status_history_order_id', 'store_order_status_history', ['order_id']
    )

    op.create_table(
        'store_order_number_sequences',
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('last_value', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('day'),
    )

    # Payouts
    op.create_table(
        'vendor_payouts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('vendor_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('order_ids', JSONType, nullable=True),
        sa.Column('destination', sa.String(length=255), nullable=False),
        sa.Column('transfer_id', sa.String(length=255), nullable=True),
        sa.Column('status', payout_status, server_default='pending', nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('initiated_by', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transfer_id'),
    )
    op.create_index('ix_vendor_payouts_vendor_id', 'vendor_payouts', ['vendor_id'])


def downgrade() -> None:
    """Downgrade schema - drop everything created above."""
    op.drop_table('vendor_payouts')
    op.drop_table('store_order_number_sequences')
    op.drop_table('store_order_status_history')
    op.drop_table('store_order_items')
    op.drop_table('store_orders')
    op.drop_table('store_cart_items')
    op.drop_table('store_inventory_movements')
    op.drop_table('store_inventory_items')
    op.drop_table('store_product_variants')
    op.drop_table('store_products')
    op.drop_table('processed_webhook_events')
    op.drop_table('vendors')
    op.drop_table('customer_profiles')
    op.drop_table('users')

    bind = op.get_bind()
    for enum in (
        payout_status,
        payment_status,
        order_status,
        movement_type,
        product_status,
        webhook_provider,
        user_role,
    ):
        enum.drop(bind, checkfirst=True)
