"""initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

PROVIDERS = ('stripe', 'lemonsqueezy', 'polar', 'paddle')


def upgrade() -> None:
    sync_job_provider = postgresql.ENUM(*PROVIDERS, name='sync_job_provider')
    sync_job_type = postgresql.ENUM('manual', 'cron', 'periodic', 'webhook', name='sync_job_type')
    sync_job_status = postgresql.ENUM('pending', 'processing', 'completed', 'failed', name='sync_job_status')
    sync_range = postgresql.ENUM('today', 'last24h', 'last7d', 'custom', 'realtime', name='sync_range')
    sync_frequency = postgresql.ENUM('realtime', 'hourly', 'every-6-hours', 'daily', name='sync_frequency')
    audit_event_type = postgresql.ENUM(
        'api_key_connected',
        'api_key_disconnected',
        'provider_config_updated',
        'unauthorized_cron_access',
        name='audit_event_type',
    )
    bind = op.get_bind()
    for enum_type in (sync_job_provider, sync_job_type, sync_job_status, sync_range, sync_frequency, audit_event_type):
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        'websites',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('domain', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_websites_domain', 'websites', ['domain'])

    op.create_table(
        'provider_configs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('website_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', postgresql.ENUM(name='sync_job_provider', create_type=False), nullable=False),
        sa.Column('api_key', sa.String(), nullable=True),
        sa.Column('webhook_secret', sa.String(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('frequency', postgresql.ENUM(name='sync_frequency', create_type=False), nullable=False, server_default='realtime'),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('next_sync_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['website_id'], ['websites.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('website_id', 'provider', name='uq_provider_configs_website_provider'),
    )
    op.create_index('ix_provider_configs_website_id', 'provider_configs', ['website_id'])
    op.create_index('ix_provider_configs_next_sync_at', 'provider_configs', ['next_sync_at'])

    op.create_table(
        'sync_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('website_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', postgresql.ENUM(name='sync_job_provider', create_type=False), nullable=False),
        sa.Column('type', postgresql.ENUM(name='sync_job_type', create_type=False), nullable=False),
        sa.Column('status', postgresql.ENUM(name='sync_job_status', create_type=False), nullable=False, server_default='pending'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('sync_range', postgresql.ENUM(name='sync_range', create_type=False), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['website_id'], ['websites.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_sync_jobs_website_id', 'sync_jobs', ['website_id'])
    op.create_index('ix_sync_jobs_provider', 'sync_jobs', ['provider'])
    op.create_index('ix_sync_jobs_status', 'sync_jobs', ['status'])
    op.create_index('ix_sync_jobs_status_priority_created', 'sync_jobs', ['status', 'priority', 'created_at'])
    op.create_index('ix_sync_jobs_website_provider_status', 'sync_jobs', ['website_id', 'provider', 'status'])

    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('website_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('provider', sa.String(), nullable=False),
        sa.Column('provider_payment_id', sa.String(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('renewal', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('refunded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('customer_id', sa.String(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('visitor_id', sa.String(), nullable=True),
        sa.Column('payment_metadata', sa.JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['website_id'], ['websites.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('provider', 'provider_payment_id', name='uq_payments_provider_payment_id'),
    )
    op.create_index('ix_payments_website_id', 'payments', ['website_id'])
    op.create_index('ix_payments_provider', 'payments', ['provider'])
    op.create_index('ix_payments_provider_payment_id', 'payments', ['provider_payment_id'])
    op.create_index('ix_payments_renewal', 'payments', ['renewal'])
    op.create_index('ix_payments_refunded', 'payments', ['refunded'])
    op.create_index('ix_payments_customer_email', 'payments', ['customer_email'])
    op.create_index('ix_payments_session_id', 'payments', ['session_id'])
    op.create_index('ix_payments_visitor_id', 'payments', ['visitor_id'])
    op.create_index('ix_payments_timestamp', 'payments', ['timestamp'])
    op.create_index('ix_payments_website_timestamp', 'payments', ['website_id', 'timestamp'])

    op.create_table(
        'visitor_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('website_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('visitor_id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('first_visit_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['website_id'], ['websites.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_visitor_sessions_website_id', 'visitor_sessions', ['website_id'])
    op.create_index('ix_visitor_sessions_session_id', 'visitor_sessions', ['session_id'])
    op.create_index('ix_visitor_sessions_visitor_id', 'visitor_sessions', ['visitor_id'])
    op.create_index('ix_visitor_sessions_user_id', 'visitor_sessions', ['user_id'])
    op.create_index('ix_visitor_sessions_email', 'visitor_sessions', ['email'])
    op.create_index('ix_visitor_sessions_website_last_seen', 'visitor_sessions', ['website_id', 'last_seen_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('website_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('event_type', postgresql.ENUM(name='audit_event_type', create_type=False), nullable=False),
        sa.Column('resource_type', sa.String(), nullable=True),
        sa.Column('resource_id', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['website_id'], ['websites.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_audit_logs_website_id', 'audit_logs', ['website_id'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('visitor_sessions')
    op.drop_table('payments')
    op.drop_table('sync_jobs')
    op.drop_table('provider_configs')
    op.drop_table('websites')
    for name in ('audit_event_type', 'sync_frequency', 'sync_range', 'sync_job_status', 'sync_job_type', 'sync_job_provider'):
        op.execute(f"DROP TYPE IF EXISTS {name}")
