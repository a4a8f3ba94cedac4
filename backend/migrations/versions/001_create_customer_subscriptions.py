"""Create customer_subscriptions

Revision ID: 001
Revises: 
Create Date: 2026-10-19 10:00:00.000000

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
        'customer_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('processor_customer_id', sa.String(length=255), nullable=True),
        sa.Column('processor_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='none'),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('management_portal_url', sa.String(length=1024), nullable=True),
        sa.Column('candidate_source', sa.String(length=32), nullable=False, server_default='subscription'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        # A subscription id is only meaningful alongside a real status
        sa.CheckConstraint(
            "processor_subscription_id IS NULL OR status <> 'none'",
            name='ck_subscription_id_requires_status'
        ),
    )
    op.create_index('ix_customer_subscriptions_id', 'customer_subscriptions', ['id'])
    op.create_index('ix_customer_subscriptions_user_id', 'customer_subscriptions', ['user_id'], unique=True)
    op.create_index(
        'ix_customer_subscriptions_processor_customer_id', 'customer_subscriptions', ['processor_customer_id']
    )
    op.create_index(
        'ix_customer_subscriptions_processor_subscription_id',
        'customer_subscriptions',
        ['processor_subscription_id']
    )


def downgrade() -> None:
    op.drop_index('ix_customer_subscriptions_processor_subscription_id', table_name='customer_subscriptions')
    op.drop_index('ix_customer_subscriptions_processor_customer_id', table_name='customer_subscriptions')
    op.drop_index('ix_customer_subscriptions_user_id', table_name='customer_subscriptions')
    op.drop_index('ix_customer_subscriptions_id', table_name='customer_subscriptions')
    op.drop_table('customer_subscriptions')
