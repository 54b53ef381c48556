"""Create tenant and tracking tables

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 10:00:00.000000

WHAT:
    Creates the full pixelrelay schema:
    - shops, apps, app_settings, custom_events: tenant configuration
    - tracked_events: append-only raw event log
    - analytics_sessions: one row per (app, session_id)
    - daily_stats: one row per (app, day)

WHY:
    The unique constraints on analytics_sessions and daily_stats are the
    conflict targets of the pipeline's INSERT ... ON CONFLICT upserts;
    without them concurrent events would create duplicate rows.

REFERENCES:
    - pixelrelay/models.py
    - pixelrelay/services/ingestion_pipeline.py (stitch_session, roll_up_daily_stats)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # TENANT CONFIGURATION
    # =========================================================================
    op.create_table(
        'shops',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_domain', sa.String(), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'apps',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('app_id', sa.String(), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=True),
    )

    op.create_table(
        'app_settings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('app_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('apps.id'), nullable=False, unique=True),
        sa.Column('record_ip', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('record_location', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('record_session', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('meta_pixel_id', sa.String(), nullable=True),
        sa.Column('meta_access_token_enc', sa.Text(), nullable=True),
        sa.Column('meta_pixel_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('meta_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('meta_test_event_code', sa.String(), nullable=True),
        sa.Column('meta_token_expires_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'custom_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('app_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('apps.id'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('display_name', sa.String(), nullable=False),
        sa.Column('meta_event_name', sa.String(), nullable=True),
        sa.Column('event_data', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('app_id', 'name', name='uq_custom_event_app_name'),
    )

    # =========================================================================
    # PIPELINE OUTPUT
    # =========================================================================
    op.create_table(
        'tracked_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('app_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('apps.id'), nullable=False),
        sa.Column('event_name', sa.String(), nullable=False),
        sa.Column('url', sa.String(), nullable=True),
        sa.Column('referrer', sa.String(), nullable=True),
        sa.Column('page_title', sa.String(), nullable=True),
        sa.Column('session_id', sa.String(), nullable=True),
        sa.Column('fingerprint', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('browser', sa.String(), nullable=True),
        sa.Column('browser_version', sa.String(), nullable=True),
        sa.Column('os', sa.String(), nullable=True),
        sa.Column('os_version', sa.String(), nullable=True),
        sa.Column('device_type', sa.String(), nullable=True),
        sa.Column('screen_width', sa.Integer(), nullable=True),
        sa.Column('screen_height', sa.Integer(), nullable=True),
        sa.Column('language', sa.String(), nullable=True),
        sa.Column('utm_source', sa.String(), nullable=True),
        sa.Column('utm_medium', sa.String(), nullable=True),
        sa.Column('utm_campaign', sa.String(), nullable=True),
        sa.Column('utm_term', sa.String(), nullable=True),
        sa.Column('utm_content', sa.String(), nullable=True),
        sa.Column('value', sa.Float(), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('product_id', sa.String(), nullable=True),
        sa.Column('product_name', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('region', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('country_code', sa.String(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('custom_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_tracked_events_event_name', 'tracked_events', ['event_name'])
    op.create_index('ix_tracked_events_device_type', 'tracked_events', ['device_type'])
    op.create_index('ix_tracked_events_country', 'tracked_events', ['country'])
    op.create_index('ix_tracked_events_app_created', 'tracked_events', ['app_id', 'created_at'])

    op.create_table(
        'analytics_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('app_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('apps.id'), nullable=False),
        sa.Column('session_id', sa.String(), nullable=False),
        sa.Column('fingerprint', sa.String(), nullable=True),
        sa.Column('ip_address', sa.String(), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('browser', sa.String(), nullable=True),
        sa.Column('os', sa.String(), nullable=True),
        sa.Column('device_type', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('pageviews', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_seen', sa.DateTime(), nullable=False),
        sa.Column('last_seen', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('app_id', 'session_id', name='uq_analytics_session_app_session'),
    )

    op.create_table(
        'daily_stats',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('app_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('apps.id'), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('pageviews', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sessions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_users', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('purchases', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('revenue', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('app_id', 'date', name='uq_daily_stats_app_date'),
    )


def downgrade() -> None:
    op.drop_table('daily_stats')
    op.drop_table('analytics_sessions')
    op.drop_index('ix_tracked_events_app_created', table_name='tracked_events')
    op.drop_index('ix_tracked_events_country', table_name='tracked_events')
    op.drop_index('ix_tracked_events_device_type', table_name='tracked_events')
    op.drop_index('ix_tracked_events_event_name', table_name='tracked_events')
    op.drop_table('tracked_events')
    op.drop_table('custom_events')
    op.drop_table('app_settings')
    op.drop_table('apps')
    op.drop_table('shops')
