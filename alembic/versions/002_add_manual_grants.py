"""add_manual_grants_to_subscriptions

Revision ID: 002
Revises: 001
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade():
    # Admin grants and removals are recorded as subscription history rows
    op.add_column('subscriptions', sa.Column('manually_granted', sa.Boolean(), nullable=False, server_default=sa.false()))
    op.add_column('subscriptions', sa.Column('granted_by', sa.String(length=128), nullable=True))


def downgrade():
    op.drop_column('subscriptions', 'granted_by')
    op.drop_column('subscriptions', 'manually_granted')
