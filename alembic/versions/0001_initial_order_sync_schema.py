"""Initial order sync schema

Revision ID: 0001
Revises:
Create Date: 2026-09-28 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create order, dependent, tracking and sync state tables."""

    # Orders
    op.create_table('orders',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Text(), nullable=False),
        sa.Column('org_id', sa.Text(), nullable=False),
        sa.Column('shop_id', sa.Text(), nullable=False),
        sa.Column('channel', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='UNKNOWN'),
        sa.Column('buyer_email', sa.Text()),
        sa.Column('buyer_message', sa.Text()),
        sa.Column('total_amount', sa.Numeric(12, 2)),
        sa.Column('currency', sa.Text()),
        sa.Column('create_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('update_time', sa.DateTime(timezone=True)),
        sa.Column('paid_time', sa.DateTime(timezone=True)),
        sa.Column('delivery_time', sa.DateTime(timezone=True)),
        sa.Column('tts_sla_time', sa.DateTime(timezone=True)),
        sa.Column('rts_sla_time', sa.DateTime(timezone=True)),
        sa.Column('cancel_order_sla_time', sa.DateTime(timezone=True)),
        sa.Column('delivery_sla_time', sa.DateTime(timezone=True)),
        sa.Column('delivery_due_time', sa.DateTime(timezone=True)),
        sa.Column('collection_due_time', sa.DateTime(timezone=True)),
        sa.Column('shipping_due_time', sa.DateTime(timezone=True)),
        sa.Column('fast_dispatch_sla_time', sa.DateTime(timezone=True)),
        sa.Column('pick_up_cut_off_time', sa.DateTime(timezone=True)),
        sa.Column('delivery_option_required_delivery_time', sa.DateTime(timezone=True)),
        sa.Column('is_problem_in_transit', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('channel_data', postgresql.JSONB()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_orders_order_id')
    )
    op.create_index('ix_orders_org_shop', 'orders', ['org_id', 'shop_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_update_time', 'orders', ['update_time'])

    # Line items
    op.create_table('order_line_items',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('line_item_id', sa.Text(), nullable=False),
        sa.Column('product_id', sa.Text()),
        sa.Column('product_name', sa.Text()),
        sa.Column('sku_id', sa.Text()),
        sa.Column('sku_name', sa.Text()),
        sa.Column('seller_sku', sa.Text()),
        sa.Column('currency', sa.Text()),
        sa.Column('original_price', sa.Numeric(12, 2)),
        sa.Column('sale_price', sa.Numeric(12, 2)),
        sa.Column('channel_data', postgresql.JSONB()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_line_items_order_id', 'order_line_items', ['order_id'])
    op.create_index('ix_order_line_items_line_item_id', 'order_line_items', ['line_item_id'])

    # Payments
    op.create_table('order_payments',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.Text()),
        sa.Column('total_amount', sa.Numeric(12, 2)),
        sa.Column('sub_total', sa.Numeric(12, 2)),
        sa.Column('tax', sa.Numeric(12, 2)),
        sa.Column('channel_data', postgresql.JSONB()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_payments_order_id', 'order_payments', ['order_id'])

    # Recipient addresses and districts
    op.create_table('order_recipient_addresses',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('full_address', sa.Text()),
        sa.Column('name', sa.Text()),
        sa.Column('phone_number', sa.Text()),
        sa.Column('postal_code', sa.Text()),
        sa.Column('channel_data', postgresql.JSONB()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_recipient_addresses_order_id', 'order_recipient_addresses', ['order_id'])

    op.create_table('address_districts',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('recipient_address_id', sa.BigInteger(), nullable=False),
        sa.Column('address_level', sa.Text()),
        sa.Column('address_level_name', sa.Text()),
        sa.Column('address_name', sa.Text()),
        sa.ForeignKeyConstraint(['recipient_address_id'], ['order_recipient_addresses.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_address_districts_address_id', 'address_districts', ['recipient_address_id'])

    # Packages
    op.create_table('order_packages',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('package_id', sa.Text(), nullable=False),
        sa.Column('status', sa.Text()),
        sa.Column('tracking_number', sa.Text()),
        sa.Column('shipping_provider_id', sa.Text()),
        sa.Column('shipping_provider_name', sa.Text()),
        sa.Column('shipping_type', sa.Text()),
        sa.Column('delivery_option_id', sa.Text()),
        sa.Column('delivery_option_name', sa.Text()),
        sa.Column('last_mile_tracking_number', sa.Text()),
        sa.Column('order_line_item_ids', sa.JSON()),
        sa.Column('channel_data', postgresql.JSONB()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'package_id', name='uq_order_packages_order_package')
    )
    op.create_index('ix_order_packages_order_id', 'order_packages', ['order_id'])
    op.create_index('ix_order_packages_tracking_number', 'order_packages', ['tracking_number'])

    # Tracking states (one per order + tracking number)
    op.create_table('fulfillment_tracking_states',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('order_package_id', sa.BigInteger(), nullable=True),
        sa.Column('org_id', sa.Text(), nullable=False),
        sa.Column('shop_id', sa.Text(), nullable=False),
        sa.Column('tracking_number', sa.Text(), nullable=False),
        sa.Column('provider_name', sa.Text()),
        sa.Column('provider_type', sa.Text()),
        sa.Column('provider_service_level', sa.Text()),
        sa.Column('provider_tracking_url', sa.Text()),
        sa.Column('status', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['order_package_id'], ['order_packages.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'tracking_number', name='uq_tracking_states_order_tracking')
    )
    op.create_index('ix_tracking_states_org_id', 'fulfillment_tracking_states', ['org_id'])
    op.create_index('ix_tracking_states_status', 'fulfillment_tracking_states', ['status'])

    # Tracking timeline
    op.create_table('order_tracking_infos',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('update_time_milli', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('occurred_at', sa.DateTime(timezone=True)),
        sa.Column('source', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_tracking_infos_order_id', 'order_tracking_infos', ['order_id'])

    # Sync state
    op.create_table('sync_state',
        sa.Column('domain', sa.String(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(timezone=True)),
        sa.Column('status', sa.String(), server_default='success'),
        sa.Column('error_count', sa.Integer(), server_default='0'),
        sa.Column('error_message', sa.Text()),
        sa.Column('sync_metadata', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('domain')
    )
    op.create_index('ix_sync_state_last_synced_at', 'sync_state', ['last_synced_at'])
    op.create_index('ix_sync_state_status', 'sync_state', ['status'])


def downgrade() -> None:
    """Drop all order sync tables."""
    op.drop_table('sync_state')
    op.drop_table('order_tracking_infos')
    op.drop_table('fulfillment_tracking_states')
    op.drop_table('order_packages')
    op.drop_table('address_districts')
    op.drop_table('order_recipient_addresses')
    op.drop_table('order_payments')
    op.drop_table('order_line_items')
    op.drop_table('orders')
