"""Initial schema - users, orders, licenses, earnings, ledger

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table('users',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False, comment='Login email'),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('telegram_chat_id', sa.String(length=32), nullable=True, comment='Linked Telegram chat for direct notifications'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Last update time'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    # Create order_deposits table
    op.create_table('order_deposits',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False, comment='Buyer'),
        sa.Column('product_id', sa.String(length=36), nullable=False, comment='Product being purchased'),
        sa.Column('product_name', sa.String(length=100), nullable=False, comment='Product name at order time'),
        sa.Column('amount_usdt', sa.Numeric(precision=18, scale=6), nullable=False, comment='Amount due'),
        sa.Column('deposit_address', sa.String(length=42), nullable=True, comment='Reserved wallet the user must pay into'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='pending, paid, confirmed, expired, canceled'),
        sa.Column('tx_hash', sa.String(length=66), nullable=True, comment='Transaction hash submitted by the user; one on-chain payment pays one order'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False, comment='Payment deadline'),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_chain_payload', sa.JSON(), nullable=True, comment='Validation outcome and manual-review annotations'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Last update time'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tx_hash')
    )

    # Create user_licenses table
    op.create_table('user_licenses',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False, comment='Owner of the license'),
        sa.Column('order_id', sa.String(length=36), nullable=False, comment='Order that produced this license (one license per order)'),
        sa.Column('product_id', sa.String(length=36), nullable=False, comment='Purchased product'),
        sa.Column('product_name', sa.String(length=100), nullable=False, comment='Product name at purchase time'),
        sa.Column('principal_usdt', sa.Numeric(precision=18, scale=6), nullable=False, comment='Principal paid for the license'),
        sa.Column('daily_rate', sa.Numeric(precision=10, scale=6), nullable=False, comment='Fraction of principal earned per day'),
        sa.Column('max_days', sa.Integer(), nullable=False, comment='Maximum number of earning days'),
        sa.Column('cap_fraction', sa.Numeric(precision=10, scale=4), nullable=False, comment='Earning cap as a multiple of principal'),
        sa.Column('days_generated', sa.Integer(), nullable=False, comment='Number of earning days already generated'),
        sa.Column('cashback_accum', sa.Numeric(precision=18, scale=6), nullable=False, comment='Accumulated cashback-phase earnings'),
        sa.Column('potential_accum', sa.Numeric(precision=18, scale=6), nullable=False, comment='Accumulated potential-phase earnings'),
        sa.Column('total_earned', sa.Numeric(precision=18, scale=6), nullable=False, comment='cashback_accum + potential_accum'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='active, completed or canceled'),
        sa.Column('pause_potential', sa.Boolean(), nullable=False, comment='When set, earnings are recorded but not credited to balance'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, comment='When the license started accruing'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True, comment='When the license reached its cap or max days'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Last update time'),
        sa.CheckConstraint('days_generated >= 0', name='ck_license_days_non_negative'),
        sa.CheckConstraint('days_generated <= max_days', name='ck_license_days_within_max'),
        sa.ForeignKeyConstraint(['order_id'], ['order_deposits.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id')
    )

    # Create license_daily_earnings table
    op.create_table('license_daily_earnings',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('license_id', sa.String(length=36), nullable=False, comment='License that earned'),
        sa.Column('day_index', sa.Integer(), nullable=False, comment='1-based contiguous day number'),
        sa.Column('earning_date', sa.Date(), nullable=False, comment='Calendar day (UTC) the earning belongs to'),
        sa.Column('cashback_amount', sa.Numeric(precision=18, scale=6), nullable=False, comment="Part of the day's earning counted as cashback"),
        sa.Column('potential_amount', sa.Numeric(precision=18, scale=6), nullable=False, comment="Part of the day's earning counted as potential"),
        sa.Column('applied_to_balance', sa.Boolean(), nullable=False, comment='False when the license potential was paused'),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True, comment='When the earning was credited to balance'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['license_id'], ['user_licenses.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('license_id', 'earning_date', name='uq_daily_earning_license_date'),
        sa.UniqueConstraint('license_id', 'day_index', name='uq_daily_earning_license_day')
    )

    # Create ledger_entries table
    op.create_table('ledger_entries',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False, comment='Account the entry belongs to'),
        sa.Column('direction', sa.String(length=10), nullable=False, comment='credit or debit'),
        sa.Column('amount', sa.Numeric(precision=18, scale=6), nullable=False, comment='Positive amount in USDT'),
        sa.Column('ref_type', sa.String(length=20), nullable=False, comment='earning, order, ...'),
        sa.Column('ref_id', sa.String(length=36), nullable=False, comment='Referenced entity id'),
        sa.Column('meta', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )

    # Create audit_logs table
    op.create_table('audit_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('actor_user_id', sa.String(length=36), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.String(length=36), nullable=False),
        sa.Column('old_values', sa.JSON(), nullable=True),
        sa.Column('new_values', sa.JSON(), nullable=True),
        sa.Column('diff', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create settings table
    op.create_table('settings',
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Row creation time'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='Last update time'),
        sa.PrimaryKeyConstraint('key')
    )

    # Create user_notifications table
    op.create_table('user_notifications',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False, comment='earning, order, system, ...'),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False),
        sa.Column('meta', sa.JSON(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )

    # Create indexes
    op.create_index('idx_users_telegram_chat', 'users', ['telegram_chat_id'])

    op.create_index('idx_order_status_created', 'order_deposits', ['status', 'created_at'])
    op.create_index('idx_order_expires', 'order_deposits', ['status', 'expires_at'])

    op.create_index('idx_license_status', 'user_licenses', ['status'])
    op.create_index('idx_license_user', 'user_licenses', ['user_id'])

    op.create_index('idx_daily_earning_date', 'license_daily_earnings', ['earning_date'])

    op.create_index('idx_ledger_user_time', 'ledger_entries', ['user_id', 'created_at'])
    op.create_index('idx_ledger_ref', 'ledger_entries', ['ref_type', 'ref_id'])

    op.create_index('idx_audit_entity', 'audit_logs', ['entity', 'entity_id'])
    op.create_index('idx_audit_action_time', 'audit_logs', ['action', 'created_at'])

    op.create_index('idx_notification_user_unread', 'user_notifications', ['user_id', 'is_read'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('idx_notification_user_unread', table_name='user_notifications')
    op.drop_index('idx_audit_action_time', table_name='audit_logs')
    op.drop_index('idx_audit_entity', table_name='audit_logs')
    op.drop_index('idx_ledger_ref', table_name='ledger_entries')
    op.drop_index('idx_ledger_user_time', table_name='ledger_entries')
    op.drop_index('idx_daily_earning_date', table_name='license_daily_earnings')
    op.drop_index('idx_license_user', table_name='user_licenses')
    op.drop_index('idx_license_status', table_name='user_licenses')
    op.drop_index('idx_order_expires', table_name='order_deposits')
    op.drop_index('idx_order_status_created', table_name='order_deposits')
    op.drop_index('idx_users_telegram_chat', table_name='users')

    # Drop tables
    op.drop_table('user_notifications')
    op.drop_table('settings')
    op.drop_table('audit_logs')
    op.drop_table('ledger_entries')
    op.drop_table('license_daily_earnings')
    op.drop_table('user_licenses')
    op.drop_table('order_deposits')
    op.drop_table('users')
