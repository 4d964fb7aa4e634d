"""create referral engine tables

Revision ID: create_referral_engine_tables
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'create_referral_engine_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('profile_picture', sa.String(512), nullable=True),
        sa.Column('referral_code', sa.String(32), nullable=True),
        sa.Column('referred_by_id', sa.Integer(), nullable=True),
        sa.Column('referral_limit', sa.Integer(), nullable=True),
        sa.Column('wallet_balance', sa.DECIMAL(12, 2), nullable=True, server_default='0'),
        sa.Column('available_balance', sa.DECIMAL(12, 2), nullable=True, server_default='0'),
        sa.Column('total_earnings', sa.DECIMAL(12, 2), nullable=True, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['referred_by_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('referral_code'),
    )
    op.create_index('ix_users_referred_by_id', 'users', ['referred_by_id'])
    op.create_index('ix_users_phone', 'users', ['phone'])
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'wallet_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_wallet_transactions_user_id', 'wallet_transactions', ['user_id'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('product_code', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price', sa.DECIMAL(12, 2), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('true')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_code'),
    )

    op.create_table(
        'referrals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('referrer_id', sa.Integer(), nullable=False),
        sa.Column('referred_user_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='ACTIVE'),
        sa.Column('start_date', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('daily_amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('days', sa.Integer(), nullable=False),
        sa.Column('total_amount', sa.DECIMAL(12, 2), nullable=True, server_default='0'),
        sa.Column('commission_percentage', sa.DECIMAL(5, 2), nullable=False),
        sa.Column('plan_name', sa.String(255), nullable=True),
        sa.Column('commission_earned', sa.DECIMAL(12, 2), nullable=True, server_default='0'),
        sa.Column('days_paid', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('pending_days', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('last_paid_date', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['referrer_id'], ['users.id']),
        sa.ForeignKeyConstraint(['referred_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('referrer_id', 'referred_user_id', name='uq_referrals_pair'),
    )
    op.create_index('ix_referrals_referrer_id', 'referrals', ['referrer_id'])
    op.create_index('ix_referrals_referred_user_id', 'referrals', ['referred_user_id'])
    op.create_index('ix_referrals_status', 'referrals', ['status'])

    op.create_table(
        'referral_purchases',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('referral_id', sa.Integer(), nullable=False),
        sa.Column('order_ref', sa.String(64), nullable=True),
        sa.Column('product_ref', sa.String(64), nullable=True),
        sa.Column('product_snapshot', sa.JSON(), nullable=True),
        sa.Column('amount', sa.DECIMAL(12, 2), nullable=True, server_default='0'),
        sa.Column('purchased_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.Column('daily_amount', sa.DECIMAL(12, 2), nullable=True),
        sa.Column('days', sa.Integer(), nullable=True),
        sa.Column('commission_percentage', sa.DECIMAL(5, 2), nullable=True),
        sa.Column('paid_days', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('pending_days', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('last_paid_date', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='ACTIVE'),
        sa.ForeignKeyConstraint(['referral_id'], ['referrals.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_referral_purchases_referral_id', 'referral_purchases', ['referral_id'])
    op.create_index('ix_referral_purchases_product_ref', 'referral_purchases', ['product_ref'])

    op.create_table(
        'daily_commissions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('referral_id', sa.Integer(), nullable=False),
        sa.Column('referrer_id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('date', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.Column('accrual_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='PAID'),
        sa.ForeignKeyConstraint(['referral_id'], ['referrals.id']),
        sa.ForeignKeyConstraint(['referrer_id'], ['users.id']),
        sa.ForeignKeyConstraint(['purchase_id'], ['referral_purchases.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('purchase_id', 'accrual_date', name='uq_daily_commissions_purchase_day'),
    )
    op.create_index('ix_daily_commissions_referrer_id', 'daily_commissions', ['referrer_id'])
    op.create_index('ix_daily_commissions_referral_id', 'daily_commissions', ['referral_id'])

    op.create_table(
        'commission_withdrawals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.DECIMAL(12, 2), nullable=False),
        sa.Column('payment_method', sa.String(32), nullable=False),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='PENDING'),
        sa.Column('transaction_id', sa.String(128), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(), nullable=True, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_commission_withdrawals_user_id', 'commission_withdrawals', ['user_id'])
    op.create_index('ix_commission_withdrawals_status', 'commission_withdrawals', ['status'])


def downgrade() -> None:
    op.drop_index('ix_commission_withdrawals_status', table_name='commission_withdrawals')
    op.drop_index('ix_commission_withdrawals_user_id', table_name='commission_withdrawals')
    op.drop_table('commission_withdrawals')
    op.drop_index('ix_daily_commissions_referral_id', table_name='daily_commissions')
    op.drop_index('ix_daily_commissions_referrer_id', table_name='daily_commissions')
    op.drop_table('daily_commissions')
    op.drop_index('ix_referral_purchases_product_ref', table_name='referral_purchases')
    op.drop_index('ix_referral_purchases_referral_id', table_name='referral_purchases')
    op.drop_table('referral_purchases')
    op.drop_index('ix_referrals_status', table_name='referrals')
    op.drop_index('ix_referrals_referred_user_id', table_name='referrals')
    op.drop_index('ix_referrals_referrer_id', table_name='referrals')
    op.drop_table('referrals')
    op.drop_table('products')
    op.drop_index('ix_wallet_transactions_user_id', table_name='wallet_transactions')
    op.drop_table('wallet_transactions')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_phone', table_name='users')
    op.drop_index('ix_users_referred_by_id', table_name='users')
    op.drop_table('users')
