from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'workspaces',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(128)),
        sa.Column('settings', sa.JSON),
        sa.Column('shopify_webhook_secret', sa.String(256), nullable=True),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_table(
        'api_keys',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id'), index=True),
        sa.Column('name', sa.String(128), nullable=True),
        sa.Column('key_prefix', sa.String(16)),
        sa.Column('key_hash', sa.String(64), unique=True, index=True),
        sa.Column('scopes', sa.String(256)),
        sa.Column('created_at', sa.DateTime),
        sa.Column('last_used_at', sa.DateTime, nullable=True),
        sa.Column('expires_at', sa.DateTime, nullable=True),
        sa.Column('revoked_at', sa.DateTime, nullable=True),
    )
    op.create_table(
        'unified_profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id'), index=True),
        sa.Column('primary_email', sa.String(320), nullable=True, index=True),
        sa.Column('emails', sa.JSON),
        sa.Column('phone', sa.String(64), nullable=True),
        sa.Column('customer_ids', sa.JSON),
        sa.Column('anonymous_ids', sa.JSON),
        sa.Column('traits', sa.JSON),
        sa.Column('computed', sa.JSON),
        sa.Column('first_seen_at', sa.DateTime),
        sa.Column('last_seen_at', sa.DateTime, index=True),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_profile_workspace_last_seen', 'unified_profiles', ['workspace_id', 'last_seen_at'])
    op.create_table(
        'identity_links',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id'), index=True),
        sa.Column('identity_type', sa.String(16)),
        sa.Column('identity_value', sa.String(320)),
        sa.Column('profile_id', sa.String(36), sa.ForeignKey('unified_profiles.id'), index=True),
        sa.Column('source', sa.String(32), nullable=True),
        sa.Column('confidence', sa.Float),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_identity_link_unique', 'identity_links', ['workspace_id', 'identity_type', 'identity_value'], unique=True)
    op.create_table(
        'events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id'), index=True),
        sa.Column('profile_id', sa.String(36), sa.ForeignKey('unified_profiles.id'), nullable=True, index=True),
        sa.Column('event_type', sa.String(32), index=True),
        sa.Column('event_name', sa.String(256)),
        sa.Column('properties', sa.JSON),
        sa.Column('context', sa.JSON),
        sa.Column('anonymous_id', sa.String(128), nullable=True, index=True),
        sa.Column('session_id', sa.String(128), nullable=True),
        sa.Column('source', sa.String(16)),
        sa.Column('status', sa.String(16), index=True),
        sa.Column('dedupe_key', sa.String(64)),
        sa.Column('dupe_count', sa.Integer),
        sa.Column('consent', sa.JSON, nullable=True),
        sa.Column('event_time', sa.DateTime, index=True),
        sa.Column('processed_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_event_dedupe_unique', 'events', ['workspace_id', 'dedupe_key'], unique=True)
    op.create_index('ix_event_workspace_anon', 'events', ['workspace_id', 'anonymous_id'])
    op.create_table(
        'destinations',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id'), index=True),
        sa.Column('type', sa.String(32)),
        sa.Column('name', sa.String(128), nullable=True),
        sa.Column('config', sa.JSON),
        sa.Column('enabled', sa.Boolean, index=True),
        sa.Column('last_sync_at', sa.DateTime, nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id'), index=True),
        sa.Column('destination_id', sa.Integer, sa.ForeignKey('destinations.id'), index=True),
        sa.Column('profile_id', sa.String(36), sa.ForeignKey('unified_profiles.id'), nullable=True, index=True),
        sa.Column('event_id', sa.String(36), sa.ForeignKey('events.id'), nullable=True),
        sa.Column('job_type', sa.String(32)),
        sa.Column('status', sa.String(16), index=True),
        sa.Column('attempts', sa.Integer),
        sa.Column('scheduled_at', sa.DateTime, index=True),
        sa.Column('started_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('payload', sa.JSON),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_sync_job_event_destination', 'sync_jobs', ['event_id', 'destination_id'], unique=True)
    op.create_index('ix_sync_job_due', 'sync_jobs', ['status', 'scheduled_at'])
    op.create_table(
        'predictive_signals',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id'), index=True),
        sa.Column('profile_id', sa.String(36), sa.ForeignKey('unified_profiles.id'), index=True),
        sa.Column('signal_type', sa.String(64)),
        sa.Column('confidence', sa.Integer),
        sa.Column('payload', sa.JSON),
        sa.Column('flow_name', sa.String(128), nullable=True),
        sa.Column('should_trigger_flow', sa.Boolean),
        sa.Column('flow_triggered_at', sa.DateTime, nullable=True),
        sa.Column('expires_at', sa.DateTime, index=True),
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_signal_unique', 'predictive_signals', ['workspace_id', 'profile_id', 'signal_type'], unique=True)
    op.create_table(
        'billing_usage',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('workspace_id', sa.String(36), sa.ForeignKey('workspaces.id'), index=True),
        sa.Column('period_start', sa.Date),
        sa.Column('events_count', sa.Integer),
        sa.Column('updated_at', sa.DateTime),
    )
    op.create_index('ix_billing_period_unique', 'billing_usage', ['workspace_id', 'period_start'], unique=True)


def downgrade():
    op.drop_table('billing_usage')
    op.drop_table('predictive_signals')
    op.drop_table('sync_jobs')
    op.drop_table('destinations')
    op.drop_table('events')
    op.drop_table('identity_links')
    op.drop_table('unified_profiles')
    op.drop_table('api_keys')
    op.drop_table('workspaces')
