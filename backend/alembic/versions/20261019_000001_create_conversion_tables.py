"""Create conversion delivery tables (webhooks, queue, failures, sessions, sites)

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 09:00:00.000000

WHAT:
    - order_webhooks: raw order webhooks as received
    - conversion_queue: durable delivery queue (unique job_id = idempotency key)
    - conversion_failures: append-only dead-letter audit
    - visitor_sessions: attribution context captured by the tracking SDK
    - site_installations: storefront site -> Market!N brand (+ encrypted key)

WHY:
    Conversions must survive restarts and Market!N outages; the queue table
    is also the only lock between concurrent queue processors.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'order_webhooks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_order_webhooks_created_at', 'order_webhooks', ['created_at'])

    # Status is a plain string column (pending, processing, completed, failed, dead)
    op.create_table(
        'conversion_queue',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('job_id', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('last_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('order_webhook_id', sa.Integer(), sa.ForeignKey('order_webhooks.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversion_queue_job_id', 'conversion_queue', ['job_id'], unique=True)
    op.create_index('ix_conversion_queue_status', 'conversion_queue', ['status'])
    op.create_index('ix_conversion_queue_order_webhook_id', 'conversion_queue', ['order_webhook_id'])
    # Due-job scan: status + next_retry_at
    op.create_index('ix_conversion_queue_status_next_retry', 'conversion_queue', ['status', 'next_retry_at'])

    op.create_table(
        'conversion_failures',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'queue_id',
            sa.Integer(),
            sa.ForeignKey('conversion_queue.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('job_id', sa.String(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('http_status', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('alert_sent', sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_conversion_failures_job_id', 'conversion_failures', ['job_id'])
    op.create_index('ix_conversion_failures_created_at', 'conversion_failures', ['created_at'])

    op.create_table(
        'visitor_sessions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('site_id', sa.String(), nullable=True),
        sa.Column('visitor_id', sa.String(), nullable=True),
        sa.Column('affiliate_id', sa.String(), nullable=True),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('product_id', sa.String(), nullable=True),
        sa.Column('landing_url', sa.String(length=2048), nullable=True),
        sa.Column('referrer_url', sa.String(length=2048), nullable=True),
        sa.Column('utm_source', sa.String(), nullable=True),
        sa.Column('utm_medium', sa.String(), nullable=True),
        sa.Column('utm_campaign', sa.String(), nullable=True),
        sa.Column('utm_content', sa.String(), nullable=True),
        sa.Column('utm_term', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.String(length=1024), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('device_type', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_visitor_sessions_session_id', 'visitor_sessions', ['session_id'], unique=True)
    op.create_index('ix_visitor_sessions_site_id', 'visitor_sessions', ['site_id'])
    op.create_index('ix_visitor_sessions_visitor_id', 'visitor_sessions', ['visitor_id'])
    op.create_index('ix_visitor_sessions_affiliate_id', 'visitor_sessions', ['affiliate_id'])
    op.create_index('ix_visitor_sessions_campaign_id', 'visitor_sessions', ['campaign_id'])
    op.create_index(
        'ix_visitor_sessions_site_visitor_created',
        'visitor_sessions',
        ['site_id', 'visitor_id', 'created_at'],
    )

    op.create_table(
        'site_installations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('site_id', sa.String(), nullable=False),
        sa.Column('instance_id', sa.String(), nullable=True),
        sa.Column('brand_id', sa.String(), nullable=True),
        sa.Column('brand_name', sa.String(), nullable=True),
        sa.Column('brand_configured_at', sa.DateTime(), nullable=True),
        sa.Column('marketin_api_key_enc', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_site_installations_site_id', 'site_installations', ['site_id'], unique=True)


def downgrade() -> None:
    # Reverse order (foreign keys)
    op.drop_table('site_installations')
    op.drop_table('visitor_sessions')
    op.drop_table('conversion_failures')
    op.drop_table('conversion_queue')
    op.drop_table('order_webhooks')
