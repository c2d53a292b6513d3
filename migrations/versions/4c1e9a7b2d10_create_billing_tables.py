"""Create billing reconciliation tables

Revision ID: 4c1e9a7b2d10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1e9a7b2d10'
down_revision = None
branch_labels = None
depends_on = None

LIVE_PREDICATE = "status IN ('active', 'trialing', 'past_due')"


def upgrade():
    op.create_table('orders',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('external_session_id', sa.String(length=255), nullable=False),
        sa.Column('external_customer_id', sa.String(length=255), nullable=True),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('external_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('organization_name', sa.String(length=255), nullable=True),
        sa.Column('contact_email', sa.String(length=255), nullable=True),
        sa.Column('category', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_session_id')
    )
    op.create_index('ix_orders_external_customer_id', 'orders', ['external_customer_id'])
    op.create_index('ix_orders_external_subscription_id', 'orders', ['external_subscription_id'])
    op.create_index('ix_orders_external_payment_intent_id', 'orders', ['external_payment_intent_id'])

    op.create_table('checkout_correlations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('external_session_id', sa.String(length=255), nullable=False),
        sa.Column('external_customer_id', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_session_id')
    )
    op.create_index('ix_checkout_correlations_expires_at', 'checkout_correlations', ['expires_at'])

    op.create_table('products',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('resource_id', sa.String(length=255), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('resource_level', sa.String(length=20), nullable=False),
        sa.Column('external_product_id', sa.String(length=255), nullable=False),
        sa.Column('monthly_price_id', sa.String(length=255), nullable=False),
        sa.Column('annual_price_id', sa.String(length=255), nullable=False),
        sa.Column('monthly_amount', sa.Integer(), nullable=False),
        sa.Column('annual_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_product_id'),
        sa.UniqueConstraint('resource_id', 'position', name='uq_products_slot')
    )
    op.create_index('ix_products_resource_id', 'products', ['resource_id'])

    op.create_table('bookings',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('resource_id', sa.String(length=255), nullable=False),
        sa.Column('advertiser_id', sa.String(length=255), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('resource_level', sa.String(length=20), nullable=True),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=False),
        sa.Column('external_customer_id', sa.String(length=255), nullable=True),
        sa.Column('external_price_id', sa.String(length=255), nullable=True),
        sa.Column('billing_interval', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_subscription_id')
    )
    op.create_index('ix_bookings_resource_id', 'bookings', ['resource_id'])
    op.create_index('ix_bookings_advertiser_id', 'bookings', ['advertiser_id'])
    op.create_index('ix_bookings_status', 'bookings', ['status'])
    # At most one live booking per slot
    op.create_index(
        'uq_bookings_live_slot',
        'bookings',
        ['resource_id', 'position'],
        unique=True,
        postgresql_where=sa.text(LIVE_PREDICATE),
        sqlite_where=sa.text(LIVE_PREDICATE),
    )

    op.create_table('dunning_cases',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('invoice_id', sa.String(length=255), nullable=False),
        sa.Column('subscription_id', sa.String(length=255), nullable=True),
        sa.Column('customer_id', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=255), nullable=True),
        sa.Column('amount_due', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('attempt_count', sa.Integer(), nullable=False),
        sa.Column('manual_retry_count', sa.Integer(), nullable=False),
        sa.Column('overdue_since', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('escalation_stage', sa.String(length=50), nullable=False),
        sa.Column('last_notified_stage', sa.String(length=50), nullable=True),
        sa.Column('last_notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_id')
    )
    op.create_index('ix_dunning_cases_subscription_id', 'dunning_cases', ['subscription_id'])
    op.create_index('ix_dunning_cases_customer_id', 'dunning_cases', ['customer_id'])
    op.create_index('ix_dunning_cases_escalation_stage', 'dunning_cases', ['escalation_stage'])

    op.create_table('processed_events',
        sa.Column('external_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('external_event_id')
    )
    op.create_index('ix_processed_events_processed_at', 'processed_events', ['processed_at'])

    op.create_table('audit_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('needs_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_events_action', 'audit_events', ['action'])
    op.create_index('ix_audit_events_event_id', 'audit_events', ['event_id'])
    op.create_index('ix_audit_events_needs_review', 'audit_events', ['needs_review'])


def downgrade():
    op.drop_table('audit_events')
    op.drop_table('processed_events')
    op.drop_table('dunning_cases')
    op.drop_index('uq_bookings_live_slot', table_name='bookings')
    op.drop_table('bookings')
    op.drop_table('products')
    op.drop_table('checkout_correlations')
    op.drop_table('orders')
