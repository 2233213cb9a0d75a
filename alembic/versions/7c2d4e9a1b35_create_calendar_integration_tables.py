"""create calendar integration tables

Revision ID: 7c2d4e9a1b35
Revises:
Create Date: 2026-10-19 09:12:44.531207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '7c2d4e9a1b35'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""

    # 1. Create calendar_integrations table
    op.create_table(
        'calendar_integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('service_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('calendar_id', sa.String(255), nullable=False),
        sa.Column('calendar_name', sa.String(255), nullable=True),
        sa.Column('calendar_timezone', sa.String(64), server_default='UTC', nullable=True),
        sa.Column('calendar_color', sa.String(7), nullable=True),
        sa.Column('access_token_encrypted', sa.LargeBinary, nullable=False),
        sa.Column('refresh_token_encrypted', sa.LargeBinary, nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean, server_default=sa.text('true'), nullable=False),
        sa.Column('sync_bookings', sa.Boolean, server_default=sa.text('true'), nullable=False),
        sa.Column('sync_availability', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('auto_block_external_events', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('sync_settings', sa.JSON, nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_error_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('last_sync_error', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.UniqueConstraint('user_id', 'service_id', 'provider', 'calendar_id', name='uq_calendar_integration_target'),
    )

    # Indexes for calendar_integrations
    op.create_index('idx_calendar_integrations_user_active', 'calendar_integrations', ['user_id', 'is_active'])
    op.create_index('idx_calendar_integrations_provider_active', 'calendar_integrations', ['provider', 'is_active'])
    op.create_index(
        'uq_calendar_integration_target_all_services',
        'calendar_integrations',
        ['user_id', 'provider', 'calendar_id'],
        unique=True,
        postgresql_where=sa.text('service_id IS NULL'),
    )

    # 2. Create calendar_events table
    op.create_table(
        'calendar_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('calendar_integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('calendar_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_all_day', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('blocks_booking', sa.Boolean, server_default=sa.text('true'), nullable=False),
        sa.Column('block_type', sa.String(10), server_default='full', nullable=False),
        sa.Column('last_updated_externally', sa.DateTime(timezone=True), nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.UniqueConstraint('calendar_integration_id', 'external_event_id', name='uq_calendar_event_external_id'),
        sa.CheckConstraint("block_type IN ('full', 'partial', 'none')", name='check_calendar_event_block_type'),
    )

    # Indexes for calendar_events
    op.create_index('idx_calendar_events_window', 'calendar_events', ['calendar_integration_id', 'starts_at', 'ends_at'])
    op.create_index('idx_calendar_events_booking', 'calendar_events', ['booking_id'])

    # 3. Create calendar_sync_jobs table
    op.create_table(
        'calendar_sync_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('calendar_integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('calendar_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('job_type', sa.String(30), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('events_processed', sa.Integer, server_default='0', nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('job_data', sa.JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.CheckConstraint(
            "job_type IN ('sync_bookings', 'sync_availability', 'sync_events')",
            name='check_calendar_sync_job_type'
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='check_calendar_sync_job_status'
        ),
    )

    # Indexes for calendar_sync_jobs
    op.create_index('idx_calendar_sync_jobs_integration_status', 'calendar_sync_jobs', ['calendar_integration_id', 'status'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_calendar_sync_jobs_integration_status', table_name='calendar_sync_jobs')
    op.drop_table('calendar_sync_jobs')

    op.drop_index('idx_calendar_events_booking', table_name='calendar_events')
    op.drop_index('idx_calendar_events_window', table_name='calendar_events')
    op.drop_table('calendar_events')

    op.drop_index('uq_calendar_integration_target_all_services', table_name='calendar_integrations')
    op.drop_index('idx_calendar_integrations_provider_active', table_name='calendar_integrations')
    op.drop_index('idx_calendar_integrations_user_active', table_name='calendar_integrations')
    op.drop_table('calendar_integrations')
