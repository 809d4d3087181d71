"""Add video_sessions end_reason

Revision ID: 0002
Revises: 0001
Create Date: 2026-03-04 10:12:00.000000

Records why a viewing session stopped being active. Sessions closed by the
stale-session sweeper ('stale') may be resumed by the same player, but only
after the concurrency policy is evaluated again.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str | None = '0002'
down_revision: Union[str, None] = '0001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Apply schema changes."""
    op.add_column('video_sessions', sa.Column('end_reason', sa.String(length=16), nullable=True))
    op.create_check_constraint(
        'ck_video_sessions_end_reason',
        'video_sessions',
        "end_reason IN ('stale', 'replaced', 'cleanup', 'ended', 'close')",
    )


def downgrade() -> None:
    """Revert schema changes."""
    op.drop_constraint('ck_video_sessions_end_reason', 'video_sessions', type_='check')
    op.drop_column('video_sessions', 'end_reason')
