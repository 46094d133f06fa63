"""Initial schema: upload jobs, staging, properties, violations, geocoding jobs.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18

Types are portable between SQLite and PostgreSQL.
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '0001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables."""

    # =========================================================================
    # Table: upload_job
    # =========================================================================
    op.create_table(
        'upload_job',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='QUEUED'),
        sa.Column('filename', sa.String(255), nullable=False),
        sa.Column('storage_path', sa.String(512), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('state', sa.String(2), nullable=True),
        sa.Column('county', sa.String(100), nullable=True),
        sa.Column('parent_job_id', sa.Integer(), nullable=True),
        sa.Column('total_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('properties_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('violations_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duplicate_case_ids', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('warnings', sa.JSON(), nullable=True),
        sa.Column('insights_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.current_timestamp()),
        sa.ForeignKeyConstraint(['parent_job_id'], ['upload_job.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_upload_job_status', 'upload_job', ['status'])
    op.create_index('ix_upload_job_parent_job_id', 'upload_job', ['parent_job_id'])
    op.create_index('ix_upload_job_status_updated', 'upload_job', ['status', 'updated_at'])

    # =========================================================================
    # Table: upload_staging
    # =========================================================================
    op.create_table(
        'upload_staging',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.Integer(), nullable=False),
        sa.Column('row_num', sa.Integer(), nullable=False),
        sa.Column('case_id', sa.String(100), nullable=True),
        sa.Column('address', sa.String(255), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('state', sa.String(50), nullable=True),
        sa.Column('zip', sa.String(20), nullable=True),
        sa.Column('violation', sa.Text(), nullable=True),
        sa.Column('status', sa.String(100), nullable=True),
        sa.Column('opened_date', sa.String(50), nullable=True),
        sa.Column('last_updated', sa.String(50), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['upload_job.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_upload_staging_job_id', 'upload_staging', ['job_id'])
    op.create_index('ix_upload_staging_job_row', 'upload_staging', ['job_id', 'row_num'])

    # =========================================================================
    # Table: property
    # =========================================================================
    op.create_table(
        'property',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('address', sa.String(255), nullable=False),
        sa.Column('city', sa.String(100), nullable=False),
        sa.Column('state', sa.String(2), nullable=False),
        sa.Column('zip', sa.String(10), nullable=True),
        sa.Column('normalized_key', sa.String(512), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('geocode_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('geocode_provider', sa.String(30), nullable=True),
        sa.Column('geocoded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_violations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('open_violations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('repeat_offender', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_enforcement_date', sa.Date(), nullable=True),
        sa.Column('snap_score', sa.Integer(), nullable=True),
        sa.Column('snap_insight', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('normalized_key'),
    )
    op.create_index('ix_property_state', 'property', ['state'])
    op.create_index('ix_property_geocode_status', 'property', ['geocode_status'])
    op.create_index('ix_property_city_state', 'property', ['city', 'state'])
    op.create_index('ix_property_geocode_pending', 'property', ['latitude', 'longitude'])

    # =========================================================================
    # Table: violation
    # =========================================================================
    op.create_table(
        'violation',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('case_id', sa.String(100), nullable=True),
        sa.Column('violation_type', sa.Text(), nullable=False),
        sa.Column('status', sa.String(100), nullable=False, server_default='Open'),
        sa.Column('opened_date', sa.Date(), nullable=True),
        sa.Column('last_updated', sa.Date(), nullable=True),
        sa.Column('days_open', sa.Integer(), nullable=True),
        sa.Column('upload_job_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.ForeignKeyConstraint(['property_id'], ['property.id']),
        sa.ForeignKeyConstraint(['upload_job_id'], ['upload_job.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_violation_property_id', 'violation', ['property_id'])
    op.create_index('ix_violation_case_id', 'violation', ['case_id'])
    op.create_index('ix_violation_upload_job_id', 'violation', ['upload_job_id'])
    op.create_index('ix_violation_property_case', 'violation', ['property_id', 'case_id'])

    # =========================================================================
    # Table: geocoding_job
    # =========================================================================
    op.create_table(
        'geocoding_job',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('total_properties', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('geocoded_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('batches_run', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_geocoding_job_status', 'geocoding_job', ['status'])
    op.create_index('ix_geocoding_job_status_created', 'geocoding_job', ['status', 'created_at'])

    # =========================================================================
    # Table: scheduler_lock
    # =========================================================================
    op.create_table(
        'scheduler_lock',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('lock_name', sa.String(100), nullable=False),
        sa.Column('locked_by', sa.String(64), nullable=False),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_scheduler_lock_lock_name', 'scheduler_lock', ['lock_name'], unique=True)
    op.create_index('ix_scheduler_lock_expires_at', 'scheduler_lock', ['expires_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('scheduler_lock')
    op.drop_table('geocoding_job')
    op.drop_table('violation')
    op.drop_table('property')
    op.drop_table('upload_staging')
    op.drop_table('upload_job')
