"""Sync batch ledger

Revision ID: 002_sync_batches
Revises: 001_initial
Create Date: 2026-10-15 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '002_sync_batches'
down_revision = '001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'sync_batches',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('integration_type', sa.String(length=64), nullable=False),
        sa.Column('data_source_id', sa.String(length=32), nullable=True),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('sync_id', sa.String(length=32), nullable=False),
        sa.Column('batch_number', sa.Integer(), nullable=False),
        sa.Column('is_final', sa.Boolean(), nullable=False),
        sa.Column('job_id', sa.String(length=32), nullable=True),
        sa.Column('metrics', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'sync_id', 'entity_type', 'batch_number', name='uq_sync_batch'),
    )


def downgrade() -> None:
    op.drop_table('sync_batches')
