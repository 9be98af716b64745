"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates:
- strava_credentials: Encrypted token pair per user
- strava_refresh_locks: Refresh leases
- strava_import_runs: Import progress per user
- strava_activity_cache: Seen activities for orphan detection
- sessions: Normalized training sessions
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'strava_credentials',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('athlete_id', sa.String(20), nullable=True),
        sa.Column('encrypted_access_token', sa.Text(), nullable=False),
        sa.Column('encrypted_refresh_token', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.Integer(), nullable=False),
        sa.Column('encryption_key_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('scope', sa.String(255), nullable=True),
        sa.Column('refresh_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_refresh_at', sa.DateTime(), nullable=True),
        sa.Column('revoked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_strava_credentials_user_id', 'strava_credentials', ['user_id'], unique=True)

    op.create_table(
        'strava_refresh_locks',
        sa.Column('user_id', sa.String(36), primary_key=True),
        sa.Column('lock_id', sa.String(36), nullable=False, unique=True),
        sa.Column('expires_at', sa.Float(), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'strava_import_runs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('run_id', sa.String(36), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='NOT_STARTED'),
        sa.Column('continue_token', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('heartbeat_at', sa.DateTime(), nullable=True),
        sa.Column('last_run_at', sa.DateTime(), nullable=True),
        sa.Column('last_error_code', sa.String(50), nullable=True),
        sa.Column('last_error', sa.String(500), nullable=True),
        sa.Column('last_import_after', sa.BigInteger(), nullable=True),
        sa.Column('total_imported', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_duplicates', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_updated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_removed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_strava_import_runs_user_id', 'strava_import_runs', ['user_id'], unique=True)

    op.create_table(
        'strava_activity_cache',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('source', sa.String(20), nullable=False, server_default='strava'),
        sa.Column('source_id', sa.String(100), nullable=False),
        sa.Column('version', sa.String(64), nullable=True),
        sa.Column('start_at_utc', sa.DateTime(), nullable=True),
        sa.Column('last_seen_run_id', sa.String(36), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'source', 'source_id', name='uq_activity_cache_source'),
    )
    op.create_index('ix_activity_cache_seen', 'strava_activity_cache', ['user_id', 'last_seen_run_id'])

    op.create_table(
        'sessions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('source_id', sa.String(100), nullable=False),
        sa.Column('external_url', sa.String(255), nullable=True),
        sa.Column('version', sa.String(64), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('sport_type', sa.String(20), nullable=False, server_default='other'),
        sa.Column('start_at_local', sa.DateTime(), nullable=True),
        sa.Column('utc_date', sa.DateTime(), nullable=False),
        sa.Column('timezone', sa.String(64), nullable=True),
        sa.Column('timezone_offset_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('elapsed_duration', sa.Integer(), nullable=True),
        sa.Column('moving_duration', sa.Integer(), nullable=True),
        sa.Column('distance', sa.Float(), nullable=True),
        sa.Column('average_speed', sa.Float(), nullable=True),
        sa.Column('pace_seconds_per_km', sa.Float(), nullable=True),
        sa.Column('elevation_gain', sa.Float(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('user_id', 'source', 'source_id', name='uq_sessions_source'),
    )
    op.create_index('ix_sessions_user_date', 'sessions', ['user_id', 'utc_date'])


def downgrade() -> None:
    op.drop_index('ix_sessions_user_date', table_name='sessions')
    op.drop_table('sessions')
    op.drop_index('ix_activity_cache_seen', table_name='strava_activity_cache')
    op.drop_table('strava_activity_cache')
    op.drop_index('ix_strava_import_runs_user_id', table_name='strava_import_runs')
    op.drop_table('strava_import_runs')
    op.drop_table('strava_refresh_locks')
    op.drop_index('ix_strava_credentials_user_id', table_name='strava_credentials')
    op.drop_table('strava_credentials')
