"""add_billing_tables

Revision ID: 001_add_billing_tables
Revises:
Create Date: 2026-09-14 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_add_billing_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users (account management owns the rest of this table)
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_superuser', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    # Coupons
    op.create_table(
        'coupons',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('trial_days', sa.Integer(), nullable=False),
        sa.Column('valid_from', sa.DateTime(), nullable=True),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            'max_uses IS NULL OR current_uses <= max_uses',
            name='ck_coupons_uses_within_max',
        ),
    )
    op.create_index(op.f('ix_coupons_id'), 'coupons', ['id'], unique=False)
    op.create_index(op.f('ix_coupons_code'), 'coupons', ['code'], unique=True)

    # Subscriptions (one per user)
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('plan_type', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('status_changed_at', sa.DateTime(), nullable=True),
        sa.Column('remote_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('remote_plan_id', sa.String(length=255), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('trial_end_date', sa.DateTime(), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('coupon_code', sa.String(length=64), nullable=True),
        sa.Column('coupon_id', sa.Uuid(), nullable=True),
        sa.Column('is_free_access', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_trial_coupon', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('granted_by_admin_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['granted_by_admin_id'], ['users.id'], ondelete='SET NULL'),
    )
    op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=True)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)
    op.create_index(
        op.f('ix_subscriptions_remote_subscription_id'),
        'subscriptions',
        ['remote_subscription_id'],
        unique=True,
    )
    op.create_index(op.f('ix_subscriptions_coupon_id'), 'subscriptions', ['coupon_id'], unique=False)

    # Billing history ledger
    op.create_table(
        'billing_history',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=False, unique=True),
        sa.Column('remote_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('remote_sale_id', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_date', sa.DateTime(), nullable=False),
        sa.Column('refunded_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('refunded_date', sa.DateTime(), nullable=True),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('remote_refund_id', sa.String(length=255), nullable=True),
        sa.Column('invoice_url', sa.String(length=512), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
    )
    op.create_index(op.f('ix_billing_history_id'), 'billing_history', ['id'], unique=False)
    op.create_index(op.f('ix_billing_history_subscription_id'), 'billing_history', ['subscription_id'], unique=False)
    op.create_index(
        op.f('ix_billing_history_remote_transaction_id'),
        'billing_history',
        ['remote_transaction_id'],
        unique=True,
    )
    op.create_index(op.f('ix_billing_history_remote_sale_id'), 'billing_history', ['remote_sale_id'], unique=False)
    op.create_index(op.f('ix_billing_history_status'), 'billing_history', ['status'], unique=False)

    # Inbound provider webhook events
    op.create_table(
        'payment_webhook_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('provider_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('event_time', sa.DateTime(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f('ix_payment_webhook_events_id'), 'payment_webhook_events', ['id'], unique=False)
    op.create_index(
        op.f('ix_payment_webhook_events_provider_event_id'),
        'payment_webhook_events',
        ['provider_event_id'],
        unique=True,
    )
    op.create_index(op.f('ix_payment_webhook_events_event_type'), 'payment_webhook_events', ['event_type'], unique=False)
    op.create_index(op.f('ix_payment_webhook_events_processed'), 'payment_webhook_events', ['processed'], unique=False)

    # Old remote subscriptions awaiting cancellation after an upgrade
    op.create_table(
        'superseded_remote_subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('remote_subscription_id', sa.String(length=255), nullable=False),
        sa.Column('plan_type', sa.String(length=20), nullable=False),
        sa.Column('replaced_by_remote_id', sa.String(length=255), nullable=False),
        sa.Column('state', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index(op.f('ix_superseded_remote_subscriptions_id'), 'superseded_remote_subscriptions', ['id'], unique=False)
    op.create_index(
        op.f('ix_superseded_remote_subscriptions_subscription_id'),
        'superseded_remote_subscriptions',
        ['subscription_id'],
        unique=False,
    )
    op.create_index(
        op.f('ix_superseded_remote_subscriptions_user_id'),
        'superseded_remote_subscriptions',
        ['user_id'],
        unique=False,
    )
    op.create_index(
        op.f('ix_superseded_remote_subscriptions_remote_subscription_id'),
        'superseded_remote_subscriptions',
        ['remote_subscription_id'],
        unique=False,
    )
    op.create_index(
        op.f('ix_superseded_remote_subscriptions_state'),
        'superseded_remote_subscriptions',
        ['state'],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table('superseded_remote_subscriptions')
    op.drop_table('payment_webhook_events')
    op.drop_table('billing_history')
    op.drop_table('subscriptions')
    op.drop_table('coupons')
    op.drop_table('users')
