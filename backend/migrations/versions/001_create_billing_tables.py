"""Create users, workspaces, pricing settings, customers, invoices and stripe_webhook_events

Revision ID: 001
Revises:
Create Date: 2026-10-18 10:00:00.000000

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
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('active_workspace_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('plan', sa.String(length=50), nullable=False, server_default='free'),
        sa.Column('is_pro', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('subscription_status', sa.String(length=50), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_connect_account_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_connect_payouts_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stripe_connect_details_submitted', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'])
    op.create_index('ix_users_stripe_subscription_id', 'users', ['stripe_subscription_id'])
    op.create_index('ix_users_stripe_connect_account_id', 'users', ['stripe_connect_account_id'])

    op.create_table(
        'workspaces',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('owner_user_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_workspaces_owner_user_id', 'workspaces', ['owner_user_id'])

    op.create_table(
        'workspace_pricing_settings',
        sa.Column('workspace_id', sa.String(length=36), sa.ForeignKey('workspaces.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('processing_uplift_enabled', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'customers',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('workspace_id', sa.String(length=36), sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_customers_workspace_id', 'customers', ['workspace_id'])

    op.create_table(
        'invoices',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('workspace_id', sa.String(length=36), sa.ForeignKey('workspaces.id', ondelete='CASCADE'), nullable=False),
        sa.Column('customer_id', sa.String(length=36), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='eur'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('processing_uplift_amount', sa.Integer(), nullable=True),
        sa.Column('payable_amount', sa.Integer(), nullable=True),
        sa.Column('platform_fee_amount', sa.Integer(), nullable=True),
        sa.Column('stripe_checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_processing_fee_amount', sa.Integer(), nullable=True),
        sa.Column('stripe_net_amount', sa.Integer(), nullable=True),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_invoices_workspace_id', 'invoices', ['workspace_id'])
    op.create_index('ix_invoices_customer_id', 'invoices', ['customer_id'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_stripe_checkout_session_id', 'invoices', ['stripe_checkout_session_id'])
    op.create_index('ix_invoices_stripe_payment_intent_id', 'invoices', ['stripe_payment_intent_id'])

    op.create_table(
        'stripe_webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('account', sa.String(length=255), nullable=True),
        sa.Column('livemode', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='received'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_stripe_webhook_events_event_id', 'stripe_webhook_events', ['event_id'], unique=True)
    op.create_index('ix_stripe_webhook_events_event_type', 'stripe_webhook_events', ['event_type'])


def downgrade() -> None:
    op.drop_index('ix_stripe_webhook_events_event_type', table_name='stripe_webhook_events')
    op.drop_index('ix_stripe_webhook_events_event_id', table_name='stripe_webhook_events')
    op.drop_table('stripe_webhook_events')
    op.drop_table('invoices')
    op.drop_table('customers')
    op.drop_table('workspace_pricing_settings')
    op.drop_table('workspaces')
    op.drop_table('users')
