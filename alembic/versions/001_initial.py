"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-15 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(updated: bool = True) -> list:
    columns = [sa.Column('created_at', sa.DateTime(), nullable=False)]
    if updated:
        columns.append(sa.Column('updated_at', sa.DateTime(), nullable=False))
    columns.append(sa.Column('deleted_at', sa.DateTime(), nullable=True))
    return columns


def upgrade() -> None:
    # Data sources table
    op.create_table(
        'data_sources',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('integration_type', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('config', postgresql.JSONB(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_data_sources_tenant_id', 'data_sources', ['tenant_id'])

    # Entities table
    op.create_table(
        'entities',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('integration_type', sa.String(length=64), nullable=False),
        sa.Column('data_source_id', sa.String(length=32), nullable=True),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('data_hash', sa.String(length=64), nullable=False),
        sa.Column('site_id', sa.String(length=64), nullable=True),
        sa.Column('normalized_data', postgresql.JSONB(), nullable=False),
        sa.Column('raw_data', postgresql.JSONB(), nullable=False),
        sa.Column('tags', postgresql.JSONB(), nullable=False),
        sa.Column('state', sa.String(length=16), nullable=True),
        sa.Column('sync_id', sa.String(length=32), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'tenant_id', 'integration_type', 'data_source_id', 'entity_type', 'external_id',
            name='uq_entity_identity',
        ),
    )
    op.create_index('ix_entities_source_type', 'entities', ['tenant_id', 'data_source_id', 'entity_type'])

    # Relationships table
    op.create_table(
        'entity_relationships',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('data_source_id', sa.String(length=32), nullable=True),
        sa.Column('source_entity_type', sa.String(length=32), nullable=False),
        sa.Column('source_entity_id', sa.String(length=32), nullable=False),
        sa.Column('target_entity_type', sa.String(length=32), nullable=False),
        sa.Column('target_entity_id', sa.String(length=32), nullable=False),
        sa.Column('relationship_type', sa.String(length=32), nullable=False),
        sa.Column('meta', postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'source_entity_id', 'target_entity_id', 'relationship_type', name='uq_relationship_edge'
        ),
    )
    op.create_index('ix_relationships_source', 'entity_relationships', ['tenant_id', 'data_source_id'])
    op.create_index('ix_entity_relationships_source_entity_id', 'entity_relationships', ['source_entity_id'])
    op.create_index('ix_entity_relationships_target_entity_id', 'entity_relationships', ['target_entity_id'])

    # Alerts table
    op.create_table(
        'entity_alerts',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('data_source_id', sa.String(length=32), nullable=True),
        sa.Column('integration_type', sa.String(length=64), nullable=True),
        sa.Column('entity_id', sa.String(length=32), nullable=False),
        sa.Column('alert_type', sa.String(length=64), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('fingerprint', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('meta', postgresql.JSONB(), nullable=True),
        sa.Column('first_seen_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('suppressed_by', sa.String(length=64), nullable=True),
        sa.Column('suppressed_at', sa.DateTime(), nullable=True),
        sa.Column('suppression_reason', sa.Text(), nullable=True),
        sa.Column('suppressed_until', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'data_source_id', 'fingerprint', name='uq_alert_fingerprint'),
    )
    op.create_index('ix_entity_alerts_tenant_id', 'entity_alerts', ['tenant_id'])
    op.create_index('ix_entity_alerts_entity_id', 'entity_alerts', ['entity_id'])

    # Audit log table
    op.create_table(
        'audit_log',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('target_type', sa.String(length=64), nullable=False),
        sa.Column('target_id', sa.String(length=32), nullable=False),
        sa.Column('details', postgresql.JSONB(), nullable=True),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_log_tenant_id', 'audit_log', ['tenant_id'])
    op.create_index('ix_audit_log_target_id', 'audit_log', ['target_id'])

    # Job history table
    op.create_table(
        'job_history',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('integration_type', sa.String(length=64), nullable=False),
        sa.Column('data_source_id', sa.String(length=32), nullable=True),
        sa.Column('job_id', sa.String(length=32), nullable=True),
        sa.Column('sync_id', sa.String(length=32), nullable=True),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('metrics', postgresql.JSONB(), nullable=True),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_job_history_source', 'job_history', ['tenant_id', 'data_source_id', 'started_at'])


def downgrade() -> None:
    op.drop_table('job_history')
    op.drop_table('audit_log')
    op.drop_table('entity_alerts')
    op.drop_table('entity_relationships')
    op.drop_table('entities')
    op.drop_table('data_sources')
