"""Menu sync tables

Revision ID: 001
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Snapshots of the catalog, one per version and scope
    op.create_table('menu_snapshots',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('account_id', sa.String(length=100), nullable=False),
    sa.Column('branch_id', sa.String(length=100), nullable=True),
    sa.Column('menu_group_id', sa.String(length=100), nullable=True),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('snapshot_hash', sa.String(length=64), nullable=False),
    sa.Column('products_count', sa.Integer(), nullable=False),
    sa.Column('categories_count', sa.Integer(), nullable=False),
    sa.Column('modifiers_count', sa.Integer(), nullable=False),
    sa.Column('compressed_data', sa.LargeBinary(), nullable=True),
    sa.Column('snapshot_date', sa.DateTime(timezone=True), nullable=False),
    sa.Column('is_synced', sa.Boolean(), nullable=False),
    sa.Column('import_id', sa.String(length=200), nullable=True),
    sa.Column('vendor_code', sa.String(length=100), nullable=True),
    sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_menu_snapshots_id'), 'menu_snapshots', ['id'], unique=False)
    op.create_index('idx_menu_snapshots_scope_version', 'menu_snapshots',
                    ['account_id', 'branch_id', 'menu_group_id', 'version'])
    op.create_index('idx_menu_snapshots_hash', 'menu_snapshots', ['snapshot_hash'])

    op.create_table('menu_change_logs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('snapshot_id', sa.Integer(), nullable=False),
    sa.Column('previous_version', sa.Integer(), nullable=True),
    sa.Column('current_version', sa.Integer(), nullable=False),
    sa.Column('change_type', sa.String(length=20), nullable=False),
    sa.Column('entity_type', sa.String(length=30), nullable=False),
    sa.Column('entity_id', sa.String(length=100), nullable=False),
    sa.Column('entity_name', sa.String(length=500), nullable=True),
    sa.Column('changed_fields', sa.String(length=500), nullable=True),
    sa.Column('old_value', sa.Text(), nullable=True),
    sa.Column('new_value', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.ForeignKeyConstraint(['snapshot_id'], ['menu_snapshots.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_menu_change_logs_id'), 'menu_change_logs', ['id'], unique=False)
    op.create_index('idx_menu_change_logs_snapshot', 'menu_change_logs', ['snapshot_id'])
    op.create_index('idx_menu_change_logs_entity', 'menu_change_logs', ['entity_type', 'entity_id'])

    op.create_table('menu_deltas',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('account_id', sa.String(length=100), nullable=False),
    sa.Column('branch_id', sa.String(length=100), nullable=True),
    sa.Column('menu_group_id', sa.String(length=100), nullable=True),
    sa.Column('correlation_id', sa.String(length=100), nullable=True),
    sa.Column('source_snapshot_id', sa.Integer(), nullable=True),
    sa.Column('target_snapshot_id', sa.Integer(), nullable=False),
    sa.Column('source_version', sa.Integer(), nullable=True),
    sa.Column('target_version', sa.Integer(), nullable=False),
    sa.Column('delta_type', sa.String(length=20), nullable=False),
    sa.Column('generation_status', sa.String(length=20), nullable=False),
    sa.Column('submission_status', sa.String(length=20), nullable=False),
    sa.Column('added_count', sa.Integer(), nullable=False),
    sa.Column('updated_count', sa.Integer(), nullable=False),
    sa.Column('removed_count', sa.Integer(), nullable=False),
    sa.Column('total_changes', sa.Integer(), nullable=False),
    sa.Column('compressed_payload', sa.LargeBinary(), nullable=True),
    sa.Column('vendor_code', sa.String(length=100), nullable=True),
    sa.Column('import_id', sa.String(length=200), nullable=True),
    sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('retry_count', sa.Integer(), nullable=False),
    sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.ForeignKeyConstraint(['source_snapshot_id'], ['menu_snapshots.id']),
    sa.ForeignKeyConstraint(['target_snapshot_id'], ['menu_snapshots.id']),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_menu_deltas_id'), 'menu_deltas', ['id'], unique=False)
    op.create_index('idx_menu_deltas_scope_status', 'menu_deltas', ['account_id', 'submission_status'])

    op.create_table('menu_item_deletions',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('account_id', sa.String(length=100), nullable=False),
    sa.Column('branch_id', sa.String(length=100), nullable=True),
    sa.Column('entity_type', sa.String(length=30), nullable=False),
    sa.Column('entity_id', sa.String(length=100), nullable=False),
    sa.Column('entity_name', sa.String(length=500), nullable=True),
    sa.Column('deletion_reason', sa.String(length=100), nullable=False),
    sa.Column('entity_snapshot', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('sync_status', sa.String(length=20), nullable=False),
    sa.Column('vendor_code', sa.String(length=100), nullable=True),
    sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('sync_error', sa.Text(), nullable=True),
    sa.Column('retry_count', sa.Integer(), nullable=False),
    sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_menu_item_deletions_id'), 'menu_item_deletions', ['id'], unique=False)
    op.create_index('idx_menu_item_deletions_scope_status', 'menu_item_deletions', ['account_id', 'sync_status'])

    op.create_table('sync_runs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('account_id', sa.String(length=100), nullable=False),
    sa.Column('branch_id', sa.String(length=100), nullable=True),
    sa.Column('menu_group_id', sa.String(length=100), nullable=True),
    sa.Column('correlation_id', sa.String(length=100), nullable=False),
    sa.Column('sync_type', sa.String(length=20), nullable=False),
    sa.Column('trigger_source', sa.String(length=100), nullable=True),
    sa.Column('initiated_by', sa.String(length=100), nullable=True),
    sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('duration_seconds', sa.Float(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('result', sa.String(length=20), nullable=True),
    sa.Column('current_phase', sa.String(length=50), nullable=False),
    sa.Column('progress_percentage', sa.Integer(), nullable=False),
    sa.Column('total_products_processed', sa.Integer(), nullable=False),
    sa.Column('products_succeeded', sa.Integer(), nullable=False),
    sa.Column('products_failed', sa.Integer(), nullable=False),
    sa.Column('products_added', sa.Integer(), nullable=False),
    sa.Column('products_updated', sa.Integer(), nullable=False),
    sa.Column('products_deleted', sa.Integer(), nullable=False),
    sa.Column('vendor_code', sa.String(length=100), nullable=True),
    sa.Column('import_id', sa.String(length=200), nullable=True),
    sa.Column('submission_status', sa.String(length=20), nullable=True),
    sa.Column('errors', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('warnings', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('metrics', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('configuration', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('compressed_trace', sa.LargeBinary(), nullable=True),
    sa.Column('parent_sync_run_id', sa.Integer(), nullable=True),
    sa.Column('retry_count', sa.Integer(), nullable=False),
    sa.Column('can_retry', sa.Boolean(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.ForeignKeyConstraint(['parent_sync_run_id'], ['sync_runs.id']),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('correlation_id')
    )
    op.create_index(op.f('ix_sync_runs_id'), 'sync_runs', ['id'], unique=False)
    op.create_index('idx_sync_runs_scope_started', 'sync_runs', ['account_id', 'branch_id', 'started_at'])
    op.create_index('idx_sync_runs_status', 'sync_runs', ['status'])

    op.create_table('idempotency_records',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('scope_id', sa.String(length=100), nullable=False),
    sa.Column('idempotency_key', sa.String(length=200), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('result_hash', sa.String(length=64), nullable=True),
    sa.Column('first_seen_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('last_processed_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('scope_id', 'idempotency_key', name='uq_idempotency_scope_key')
    )
    op.create_index(op.f('ix_idempotency_records_id'), 'idempotency_records', ['id'], unique=False)

    op.create_table('dlq_messages',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('event_type', sa.String(length=50), nullable=False),
    sa.Column('correlation_id', sa.String(length=100), nullable=False),
    sa.Column('scope_id', sa.String(length=100), nullable=True),
    sa.Column('original_message', sa.Text(), nullable=False),
    sa.Column('error_code', sa.String(length=200), nullable=False),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('stack_trace', sa.Text(), nullable=True),
    sa.Column('attempts', sa.Integer(), nullable=False),
    sa.Column('failure_type', sa.String(length=20), nullable=False),
    sa.Column('priority', sa.String(length=20), nullable=False),
    sa.Column('first_attempt_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=False),
    sa.Column('is_replayed', sa.Boolean(), nullable=False),
    sa.Column('replayed_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('replayed_by', sa.String(length=100), nullable=True),
    sa.Column('replay_result', sa.String(length=20), nullable=True),
    sa.Column('replay_error_message', sa.Text(), nullable=True),
    sa.Column('is_acknowledged', sa.Boolean(), nullable=False),
    sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('acknowledged_by', sa.String(length=100), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_dlq_messages_id'), 'dlq_messages', ['id'], unique=False)
    op.create_index('idx_dlq_messages_pending', 'dlq_messages', ['is_replayed', 'is_acknowledged', 'priority'])
    op.create_index('idx_dlq_messages_event_type', 'dlq_messages', ['event_type'])
    op.create_index('idx_dlq_messages_created_at', 'dlq_messages', ['created_at'])

    op.create_table('audit_logs',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('action', sa.String(length=100), nullable=False),
    sa.Column('entity_type', sa.String(length=50), nullable=True),
    sa.Column('entity_id', sa.Integer(), nullable=True),
    sa.Column('user', sa.String(length=100), nullable=True),
    sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('ip_address', sa.String(length=45), nullable=True),
    sa.Column('user_agent', sa.String(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_audit_logs_id'), 'audit_logs', ['id'], unique=False)
    op.create_index(op.f('ix_audit_logs_created_at'), 'audit_logs', ['created_at'], unique=False)
    op.create_index('idx_audit_logs_action', 'audit_logs', ['action'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('dlq_messages')
    op.drop_table('idempotency_records')
    op.drop_table('sync_runs')
    op.drop_table('menu_item_deletions')
    op.drop_table('menu_deltas')
    op.drop_table('menu_change_logs')
    op.drop_table('menu_snapshots')
