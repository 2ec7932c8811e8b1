"""create_sales_ledger_tables

Revision ID: 4f1c2a9e7b30
Revises:
Create Date: 2026-10-19

Tenants, POS extract tables, the canonical ledger with its partial unique
key, daily rollups, categorization rules and sync tracking.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f1c2a9e7b30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def _money():
    return sa.Numeric(18, 6)


def upgrade() -> None:
    """Create every table the ledger pipeline uses (skips tables init_db already made)."""
    if not _has_table('tenants'):
        op.create_table(
            'tenants',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('timezone', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime()),
            sa.Column('updated_at', sa.DateTime()),
        )

    if not _has_table('tenant_members'):
        op.create_table(
            'tenant_members',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
            sa.Column('user_id', sa.String(), nullable=False, index=True),
            sa.Column('role', sa.String()),
            sa.Column('created_at', sa.DateTime()),
            sa.UniqueConstraint('tenant_id', 'user_id', name='uq_tenant_member'),
        )

    if not _has_table('pos_connections'):
        op.create_table(
            'pos_connections',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
            sa.Column('provider', sa.String(), nullable=False, index=True),
            sa.Column('external_account_id', sa.String(), nullable=True),
            sa.Column('access_token', sa.Text(), nullable=True),
            sa.Column('is_active', sa.Boolean(), index=True),
            sa.Column('initial_sync_done', sa.Boolean()),
            sa.Column('last_sync_time', sa.DateTime(), nullable=True),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('last_error_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime()),
            sa.Column('updated_at', sa.DateTime()),
            sa.UniqueConstraint('tenant_id', 'provider', name='uq_pos_connection_tenant_provider'),
        )

    # ── Provider extract ─────────────────────────────────
    if not _has_table('pos_orders'):
        op.create_table(
            'pos_orders',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), nullable=False, index=True),
            sa.Column('provider', sa.String(), nullable=False),
            sa.Column('external_order_id', sa.String(), nullable=False),
            sa.Column('state', sa.String(), index=True),
            sa.Column('business_date', sa.Date(), nullable=True),
            sa.Column('service_date', sa.Date(), nullable=True),
            sa.Column('opened_at', sa.DateTime(), nullable=True),
            sa.Column('closed_at', sa.DateTime(), nullable=True),
            sa.Column('gross_amount', _money(), nullable=True),
            sa.Column('tax_amount', _money(), nullable=True),
            sa.Column('tip_amount', _money(), nullable=True),
            sa.Column('discount_amount', _money(), nullable=True),
            sa.Column('service_charge_amount', _money(), nullable=True),
            sa.Column('raw_payload', sa.JSON(), nullable=True),
            sa.Column('synced_at', sa.DateTime()),
            sa.UniqueConstraint('tenant_id', 'provider', 'external_order_id', name='uq_pos_order'),
        )
        op.create_index(
            'ix_pos_orders_tenant_service_date', 'pos_orders', ['tenant_id', 'provider', 'service_date']
        )

    if not _has_table('pos_order_items'):
        op.create_table(
            'pos_order_items',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), nullable=False),
            sa.Column('provider', sa.String(), nullable=False),
            sa.Column('external_order_id', sa.String(), nullable=False),
            sa.Column('external_item_id', sa.String(), nullable=False),
            sa.Column('item_name', sa.String(), nullable=True),
            sa.Column('quantity', sa.Numeric(12, 4)),
            sa.Column('line_total', _money(), nullable=True),
            sa.Column('discount_amount', _money(), nullable=True),
            sa.Column('is_voided', sa.Boolean()),
            sa.Column('pos_category', sa.String(), nullable=True),
            sa.Column('raw_payload', sa.JSON(), nullable=True),
            sa.Column('synced_at', sa.DateTime()),
            sa.UniqueConstraint(
                'tenant_id', 'provider', 'external_order_id', 'external_item_id', name='uq_pos_order_item'
            ),
            sa.ForeignKeyConstraint(
                ['tenant_id', 'provider', 'external_order_id'],
                ['pos_orders.tenant_id', 'pos_orders.provider', 'pos_orders.external_order_id'],
            ),
        )

    if not _has_table('pos_payments'):
        op.create_table(
            'pos_payments',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), nullable=False),
            sa.Column('provider', sa.String(), nullable=False),
            sa.Column('external_order_id', sa.String(), nullable=False),
            sa.Column('external_payment_id', sa.String(), nullable=False),
            sa.Column('payment_type', sa.String(), nullable=True),
            sa.Column('status', sa.String(), nullable=True),
            sa.Column('amount', _money(), nullable=True),
            sa.Column('tip_amount', _money(), nullable=True),
            sa.Column('refund_status', sa.String(), nullable=True),
            sa.Column('refund_amount', _money(), nullable=True),
            sa.Column('raw_payload', sa.JSON(), nullable=True),
            sa.Column('synced_at', sa.DateTime()),
            sa.UniqueConstraint(
                'tenant_id', 'provider', 'external_order_id', 'external_payment_id', name='uq_pos_payment'
            ),
            sa.ForeignKeyConstraint(
                ['tenant_id', 'provider', 'external_order_id'],
                ['pos_orders.tenant_id', 'pos_orders.provider', 'pos_orders.external_order_id'],
            ),
        )

    # ── Canonical ledger ─────────────────────────────────
    if not _has_table('unified_sales'):
        op.create_table(
            'unified_sales',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), nullable=False),
            sa.Column('provider', sa.String(), nullable=False),
            sa.Column('external_order_id', sa.String(), nullable=False),
            sa.Column('external_item_id', sa.String(), nullable=False),
            sa.Column('item_name', sa.String(), nullable=True),
            sa.Column('quantity', sa.Numeric(12, 4), nullable=True),
            sa.Column('unit_price', _money(), nullable=True),
            sa.Column('total_price', _money(), nullable=False),
            sa.Column('sale_date', sa.Date(), nullable=False),
            sa.Column('sale_time', sa.Time(), nullable=True),
            sa.Column('pos_category', sa.String(), nullable=True),
            sa.Column('item_type', sa.String(), nullable=False),
            sa.Column('adjustment_type', sa.String(), nullable=True),
            sa.Column('is_categorized', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('category_code', sa.String(), nullable=True),
            sa.Column('is_split', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('parent_sale_id', sa.Integer(), sa.ForeignKey('unified_sales.id'), nullable=True, index=True),
            sa.Column('raw_data', sa.JSON(), nullable=True),
            sa.Column('synced_at', sa.DateTime()),
            sa.Column('updated_at', sa.DateTime()),
        )
        # Only unsplit canonical rows take part in the upsert conflict
        op.create_index(
            'uq_unified_sales_canonical_key',
            'unified_sales',
            ['tenant_id', 'provider', 'external_order_id', 'external_item_id'],
            unique=True,
            postgresql_where=sa.text('parent_sale_id IS NULL'),
            sqlite_where=sa.text('parent_sale_id IS NULL'),
        )
        op.create_index('ix_unified_sales_tenant_date', 'unified_sales', ['tenant_id', 'sale_date'])
        op.create_index(
            'ix_unified_sales_uncategorized', 'unified_sales', ['tenant_id', 'is_categorized', 'is_split']
        )

    if not _has_table('daily_sales'):
        op.create_table(
            'daily_sales',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), nullable=False, index=True),
            sa.Column('date', sa.Date(), nullable=False, index=True),
            sa.Column('provider', sa.String(), nullable=False),
            sa.Column('gross_revenue', sa.Numeric(14, 2)),
            sa.Column('discounts', sa.Numeric(14, 2)),
            sa.Column('voids', sa.Numeric(14, 2)),
            sa.Column('refunds', sa.Numeric(14, 2)),
            sa.Column('net_revenue', sa.Numeric(14, 2)),
            sa.Column('tax_collected', sa.Numeric(14, 2)),
            sa.Column('tips', sa.Numeric(14, 2)),
            sa.Column('service_charges', sa.Numeric(14, 2)),
            sa.Column('transaction_count', sa.Integer()),
            sa.Column('created_at', sa.DateTime()),
            sa.Column('updated_at', sa.DateTime()),
            sa.UniqueConstraint('tenant_id', 'date', 'provider', name='uq_daily_sales_tenant_date_provider'),
        )

    if not _has_table('categorization_rules'):
        op.create_table(
            'categorization_rules',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('priority', sa.Integer()),
            sa.Column('is_active', sa.Boolean(), index=True),
            sa.Column('match_type', sa.String(), nullable=True),
            sa.Column('match_value', sa.String(), nullable=True),
            sa.Column('pos_category', sa.String(), nullable=True),
            sa.Column('item_type', sa.String(), nullable=True),
            sa.Column('amount_min', sa.Numeric(18, 2), nullable=True),
            sa.Column('amount_max', sa.Numeric(18, 2), nullable=True),
            sa.Column('category_code', sa.String(), nullable=True),
            sa.Column('is_split_rule', sa.Boolean()),
            sa.Column('split_allocations', sa.JSON(), nullable=True),
            sa.Column('apply_count', sa.Integer()),
            sa.Column('last_applied_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime()),
            sa.Column('updated_at', sa.DateTime()),
        )

    # ── Sync tracking ────────────────────────────────────
    if not _has_table('sales_sync_log'):
        op.create_table(
            'sales_sync_log',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), nullable=False, index=True),
            sa.Column('provider', sa.String(), nullable=True),
            sa.Column('sync_type', sa.String(), nullable=False),
            sa.Column('status', sa.String(), nullable=False, index=True),
            sa.Column('range_start', sa.Date(), nullable=True),
            sa.Column('range_end', sa.Date(), nullable=True),
            sa.Column('rows_written', sa.Integer()),
            sa.Column('rows_created', sa.Integer()),
            sa.Column('rows_updated', sa.Integer()),
            sa.Column('rows_retracted', sa.Integer()),
            sa.Column('splits_released', sa.Integer()),
            sa.Column('rows_classified', sa.Integer()),
            sa.Column('dates_aggregated', sa.Integer()),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('error_details', sa.JSON(), nullable=True),
            sa.Column('started_at', sa.DateTime(), index=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('duration_seconds', sa.Float(), nullable=True),
        )

    if not _has_table('sales_sync_status'):
        op.create_table(
            'sales_sync_status',
            sa.Column('id', sa.Integer(), primary_key=True, index=True),
            sa.Column('tenant_id', sa.Integer(), nullable=False, index=True),
            sa.Column('provider', sa.String(), nullable=False),
            sa.Column('last_sync_attempt', sa.DateTime(), index=True),
            sa.Column('last_successful_sync', sa.DateTime(), nullable=True),
            sa.Column('sync_status', sa.String(), index=True),
            sa.Column('side_effects_pending', sa.Boolean()),
            sa.Column('rows_written', sa.Integer()),
            sa.Column('sync_duration_seconds', sa.Float(), nullable=True),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('error_count', sa.Integer()),
            sa.Column('first_error_at', sa.DateTime(), nullable=True),
            sa.Column('is_healthy', sa.Boolean(), index=True),
            sa.Column('created_at', sa.DateTime()),
            sa.Column('updated_at', sa.DateTime()),
            sa.UniqueConstraint('tenant_id', 'provider', name='uq_sales_sync_status'),
        )


def downgrade() -> None:
    """Drop every ledger pipeline table."""
    for table in (
        'sales_sync_status',
        'sales_sync_log',
        'categorization_rules',
        'daily_sales',
        'unified_sales',
        'pos_payments',
        'pos_order_items',
        'pos_orders',
        'pos_connections',
        'tenant_members',
        'tenants',
    ):
        if _has_table(table):
            op.drop_table(table)
