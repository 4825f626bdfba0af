"""webhook queue - create webhook_queue table

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00.000000

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
    # Create webhook_queue table (status as VARCHAR, not enum)
    op.create_table(
        'webhook_queue',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('webhook_type', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_webhook_queue_webhook_type', 'webhook_queue', ['webhook_type'])
    op.create_index('ix_webhook_queue_status', 'webhook_queue', ['status'])
    # Cleanup sweep filters on (status, processed_at)
    op.create_index('ix_webhook_queue_status_processed_at', 'webhook_queue', ['status', 'processed_at'])


def downgrade() -> None:
    op.drop_index('ix_webhook_queue_status_processed_at', table_name='webhook_queue')
    op.drop_index('ix_webhook_queue_status', table_name='webhook_queue')
    op.drop_index('ix_webhook_queue_webhook_type', table_name='webhook_queue')
    op.drop_table('webhook_queue')
