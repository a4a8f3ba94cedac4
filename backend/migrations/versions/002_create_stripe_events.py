"""Create stripe_events

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'stripe_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_stripe_events_id', 'stripe_events', ['id'])
    op.create_index('ix_stripe_events_event_id', 'stripe_events', ['event_id'], unique=True)
    op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])
    # Replay scans unprocessed events oldest first
    op.create_index('ix_stripe_events_processed_created_at', 'stripe_events', ['processed', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_stripe_events_processed_created_at', table_name='stripe_events')
    op.drop_index('ix_stripe_events_event_type', table_name='stripe_events')
    op.drop_index('ix_stripe_events_event_id', table_name='stripe_events')
    op.drop_index('ix_stripe_events_id', table_name='stripe_events')
    op.drop_table('stripe_events')
