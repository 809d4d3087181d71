"""Create academy, profile, course access and video tracking tables"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str | None = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Apply schema changes."""
    op.create_table(
        'academies',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_academies')),
    )

    op.create_table(
        'profiles',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('academy_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['academy_id'], ['academies.id'], name=op.f('fk_profiles_academy_id_academies'), ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_profiles')),
        sa.UniqueConstraint('email', name=op.f('uq_profiles_email')),
        sa.CheckConstraint("role IN ('admin', 'gestor', 'profesor', 'alumno')", name='ck_profiles_role'),
    )
    op.create_index('ix_profiles_role', 'profiles', ['role'], unique=False)
    op.create_index('ix_profiles_academy_id', 'profiles', ['academy_id'], unique=False)

    op.create_table(
        'courses',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('academy_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['academy_id'], ['academies.id'], name=op.f('fk_courses_academy_id_academies'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_courses')),
    )
    op.create_index('ix_courses_academy_id', 'courses', ['academy_id'], unique=False)

    op.create_table(
        'content_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('course_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('section', sa.String(length=255), nullable=True),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('video_id', sa.String(length=128), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['course_id'], ['courses.id'], name=op.f('fk_content_items_course_id_courses'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_content_items')),
        sa.CheckConstraint("kind IN ('note', 'problem_set', 'recorded_class')", name='ck_content_items_kind'),
        sa.CheckConstraint('duration_seconds IS NULL OR duration_seconds >= 0', name='ck_content_items_duration_nonnegative'),
    )
    op.create_index('ix_content_items_course_id', 'content_items', ['course_id'], unique=False)

    op.create_table(
        'course_access',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('profile_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('course_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('access', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['profile_id'], ['profiles.id'], name=op.f('fk_course_access_profile_id_profiles'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['course_id'], ['courses.id'], name=op.f('fk_course_access_course_id_courses'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_course_access')),
        sa.UniqueConstraint('profile_id', 'course_id', 'access', name='uq_course_access_profile_course'),
        sa.CheckConstraint("access IN ('purchased', 'assigned')", name='ck_course_access_kind'),
    )
    op.create_index('ix_course_access_profile_id', 'course_access', ['profile_id'], unique=False)
    op.create_index('ix_course_access_course_id', 'course_access', ['course_id'], unique=False)

    op.create_table(
        'video_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('session_token', sa.String(length=64), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('content_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('declared_duration_seconds', sa.Float(), nullable=True),
        sa.Column('watched_seconds', sa.Float(), server_default='0', nullable=False),
        sa.Column('completion_percent', sa.Float(), server_default='0', nullable=False),
        sa.Column('active', sa.Boolean(), server_default='true', nullable=False),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.id'], name=op.f('fk_video_sessions_user_id_profiles'), ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['content_id'], ['content_items.id'], name=op.f('fk_video_sessions_content_id_content_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_video_sessions')),
        sa.UniqueConstraint('session_token', name=op.f('uq_video_sessions_session_token')),
        sa.CheckConstraint('watched_seconds >= 0', name='ck_video_sessions_watched_nonnegative'),
        sa.CheckConstraint('completion_percent >= 0 AND completion_percent <= 100', name='ck_video_sessions_completion_range'),
    )
    op.create_index('ix_video_sessions_user_id', 'video_sessions', ['user_id'], unique=False)
    op.create_index('ix_video_sessions_content_id', 'video_sessions', ['content_id'], unique=False)
    op.create_index('ix_video_sessions_updated_at', 'video_sessions', ['updated_at'], unique=False)
    op.create_index('ix_video_sessions_user_active', 'video_sessions', ['user_id', 'active'], unique=False)
    # At most one active session per (user, content item)
    op.create_index(
        'uq_video_sessions_active_user_content',
        'video_sessions',
        ['user_id', 'content_id'],
        unique=True,
        postgresql_where=sa.text('active'),
    )

    op.create_table(
        'video_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('session_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('video_position_seconds', sa.Float(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(['session_id'], ['video_sessions.id'], name=op.f('fk_video_events_session_id_video_sessions'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_video_events')),
        sa.CheckConstraint("kind IN ('play', 'pause', 'seek', 'ended', 'close')", name='ck_video_events_kind'),
        sa.CheckConstraint('video_position_seconds >= 0', name='ck_video_events_position_nonnegative'),
    )
    op.create_index('ix_video_events_session_id', 'video_events', ['session_id'], unique=False)


def downgrade() -> None:
    """Revert schema changes."""
    op.drop_index('ix_video_events_session_id', table_name='video_events')
    op.drop_table('video_events')

    op.drop_index('uq_video_sessions_active_user_content', table_name='video_sessions')
    op.drop_index('ix_video_sessions_user_active', table_name='video_sessions')
    op.drop_index('ix_video_sessions_updated_at', table_name='video_sessions')
    op.drop_index('ix_video_sessions_content_id', table_name='video_sessions')
    op.drop_index('ix_video_sessions_user_id', table_name='video_sessions')
    op.drop_table('video_sessions')

    op.drop_index('ix_course_access_course_id', table_name='course_access')
    op.drop_index('ix_course_access_profile_id', table_name='course_access')
    op.drop_table('course_access')

    op.drop_index('ix_content_items_course_id', table_name='content_items')
    op.drop_table('content_items')

    op.drop_index('ix_courses_academy_id', table_name='courses')
    op.drop_table('courses')

    op.drop_index('ix_profiles_academy_id', table_name='profiles')
    op.drop_index('ix_profiles_role', table_name='profiles')
    op.drop_table('profiles')

    op.drop_table('academies')
