"""Initial schema

Revision ID: 001
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Users table (id is the auth provider uid)
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=128), primary_key=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='student'),
        sa.Column('plan', sa.String(length=32), nullable=True),
        sa.Column('plan_expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'])

    # Plans table
    op.create_table(
        'plans',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('duration_months', sa.Integer(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    # Coupons table
    op.create_table(
        'coupons',
        sa.Column('code', sa.String(length=64), primary_key=True),
        sa.Column('discount', sa.Numeric(5, 2), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('valid_from', sa.DateTime(), nullable=False),
        sa.Column('valid_until', sa.DateTime(), nullable=False),
        sa.Column('applicable_plans', sa.JSON(), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('max_uses_per_user', sa.Integer(), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    # Payment intents table
    op.create_table(
        'payment_intents',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('session_id', sa.String(length=255), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('charge_id', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('plan_id', sa.String(length=32), nullable=False),
        sa.Column('base_price_cents', sa.Integer(), nullable=False),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('coupon_code', sa.String(length=64), nullable=True),
        sa.Column('final_price_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='brl'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('status_detail', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.UniqueConstraint('charge_id', name='uq_payment_intents_charge_id'),
        sa.UniqueConstraint('session_id', 'attempt', name='uq_payment_intents_session_attempt'),
    )
    op.create_index('ix_payment_intents_session_id', 'payment_intents', ['session_id'])
    op.create_index('ix_payment_intents_user_id', 'payment_intents', ['user_id'])
    op.create_index('ix_payment_intents_plan_id', 'payment_intents', ['plan_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('ix_payment_intents_created_at', 'payment_intents', ['created_at'])

    # Subscriptions table (append-only history)
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('plan_id', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('charge_id', sa.String(length=255), nullable=False),
        sa.Column('session_id', sa.String(length=255), nullable=True),
        sa.Column('coupon_code', sa.String(length=64), nullable=True),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.UniqueConstraint('charge_id', name='uq_subscriptions_charge_id'),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_expires_at', 'subscriptions', ['expires_at'])
    op.create_index('ix_subscriptions_created_at', 'subscriptions', ['created_at'])

    # Coupon usage ledger
    op.create_table(
        'coupon_usages',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('coupon_code', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('plan_id', sa.String(length=32), nullable=False),
        sa.Column('original_price_cents', sa.Integer(), nullable=False),
        sa.Column('final_price_cents', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False),
        sa.Column('session_id', sa.String(length=255), nullable=True),
        sa.Column('charge_id', sa.String(length=255), nullable=True),
        sa.Column('used_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('coupon_code', 'charge_id', name='uq_coupon_usages_code_charge'),
    )
    op.create_index('ix_coupon_usages_coupon_code', 'coupon_usages', ['coupon_code'])
    op.create_index('ix_coupon_usages_user_id', 'coupon_usages', ['user_id'])
    op.create_index('ix_coupon_usages_session_id', 'coupon_usages', ['session_id'])
    op.create_index('ix_coupon_usages_charge_id', 'coupon_usages', ['charge_id'])

    # Webhook delivery log
    op.create_table(
        'payment_events',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('charge_id', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payment_events_event_type', 'payment_events', ['event_type'])
    op.create_index('ix_payment_events_charge_id', 'payment_events', ['charge_id'])
    op.create_index('ix_payment_events_processed', 'payment_events', ['processed'])
    op.create_index('ix_payment_events_received_at', 'payment_events', ['received_at'])

    # Reconciliation conflicts
    op.create_table(
        'reconciliation_conflicts',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('session_id', sa.String(length=255), nullable=True),
        sa.Column('charge_id', sa.String(length=255), nullable=True),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_reconciliation_conflicts_kind', 'reconciliation_conflicts', ['kind'])
    op.create_index('ix_reconciliation_conflicts_session_id', 'reconciliation_conflicts', ['session_id'])
    op.create_index('ix_reconciliation_conflicts_charge_id', 'reconciliation_conflicts', ['charge_id'])
    op.create_index('ix_reconciliation_conflicts_created_at', 'reconciliation_conflicts', ['created_at'])


def downgrade() -> None:
    op.drop_table('reconciliation_conflicts')
    op.drop_table('payment_events')
    op.drop_table('coupon_usages')
    op.drop_table('subscriptions')
    op.drop_table('payment_intents')
    op.drop_table('coupons')
    op.drop_table('plans')
    op.drop_table('users')
