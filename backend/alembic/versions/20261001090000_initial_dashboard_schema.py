"""Initial dashboard schema

Revision ID: 20261001090000
Revises:
Create Date: 2026-10-01T09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261001090000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=True),
        sa.Column('email', sa.String(length=320), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    op.create_table(
        'trading212_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('api_key', sa.Text(), nullable=False),
        sa.Column('is_practice', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('account_id', sa.String(length=100), nullable=True),
        sa.Column('currency', sa.String(length=10), nullable=True),
        sa.Column('cash', sa.Float(), nullable=True),
        sa.Column('last_connected', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'name', name='uq_trading212_accounts_user_name'),
    )
    op.create_index(op.f('ix_trading212_accounts_id'), 'trading212_accounts', ['id'], unique=False)
    op.create_index(op.f('ix_trading212_accounts_user_id'), 'trading212_accounts', ['user_id'], unique=False)
    op.create_index(op.f('ix_trading212_accounts_is_active'), 'trading212_accounts', ['is_active'], unique=False)

    op.create_table(
        'trail_stop_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=True),
        sa.Column('symbol', sa.String(length=40), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('trail_amount', sa.Float(), nullable=False),
        sa.Column('trail_percent', sa.Float(), nullable=True),
        sa.Column('stop_price', sa.Float(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_practice', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['account_id'], ['trading212_accounts.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_trail_stop_orders_id'), 'trail_stop_orders', ['id'], unique=False)
    op.create_index(op.f('ix_trail_stop_orders_user_id'), 'trail_stop_orders', ['user_id'], unique=False)
    op.create_index(op.f('ix_trail_stop_orders_account_id'), 'trail_stop_orders', ['account_id'], unique=False)
    op.create_index(op.f('ix_trail_stop_orders_symbol'), 'trail_stop_orders', ['symbol'], unique=False)
    op.create_index(op.f('ix_trail_stop_orders_is_active'), 'trail_stop_orders', ['is_active'], unique=False)

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=50), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_notifications_id'), 'notifications', ['id'], unique=False)
    op.create_index(op.f('ix_notifications_user_id'), 'notifications', ['user_id'], unique=False)
    op.create_index(op.f('ix_notifications_is_read'), 'notifications', ['is_read'], unique=False)

    op.create_table(
        'daily_pnl',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('total_pnl', sa.Float(), nullable=False),
        sa.Column('today_pnl', sa.Float(), nullable=False),
        sa.Column('total_value', sa.Float(), nullable=False),
        sa.Column('cash', sa.Float(), nullable=True),
        sa.Column('currency', sa.String(length=10), nullable=False),
        sa.Column('positions', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['account_id'], ['trading212_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'account_id', 'date', name='uq_daily_pnl_user_account_date'),
    )
    op.create_index(op.f('ix_daily_pnl_id'), 'daily_pnl', ['id'], unique=False)
    op.create_index(op.f('ix_daily_pnl_user_id'), 'daily_pnl', ['user_id'], unique=False)
    op.create_index(op.f('ix_daily_pnl_account_id'), 'daily_pnl', ['account_id'], unique=False)
    op.create_index(op.f('ix_daily_pnl_date'), 'daily_pnl', ['date'], unique=False)


def downgrade() -> None:
    op.drop_table('daily_pnl')
    op.drop_table('notifications')
    op.drop_table('trail_stop_orders')
    op.drop_table('trading212_accounts')
    op.drop_table('users')
