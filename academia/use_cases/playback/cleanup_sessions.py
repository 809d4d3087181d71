import logging
import uuid
from datetime import datetime, timedelta, timezone

from ...domain.ports.viewing_session import (
    ViewingSessionRepository,
    ViewingSessionRepositoryFactory,
)
from ...schemas.playback import CleanupSessionsResponse

logger = logging.getLogger(__name__)


async def cleanup_sessions(
    repo: ViewingSessionRepository,
    user_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> CleanupSessionsResponse:
    """Close every active session of the caller."""
    now = now or datetime.now(timezone.utc)
    try:
        closed = await repo.close_all_active(user_id, now=now)
        await repo.commit()
    except Exception:
        await repo.rollback()
        raise
    logger.info("operation=cleanup-sessions user_id=%s closed=%d", user_id, closed)
    return CleanupSessionsResponse(closed=closed)


async def close_stale_sessions(
    repo_factory: ViewingSessionRepositoryFactory,
    *,
    stale_after_seconds: float,
    now: datetime | None = None,
) -> int:
    """Close active sessions whose last heartbeat is older than the threshold."""
    now = now or datetime.now(timezone.utc)
    async with repo_factory() as repo:
        try:
            closed = await repo.close_stale(
                updated_before=now - timedelta(seconds=stale_after_seconds), now=now
            )
            await repo.commit()
        except Exception:
            await repo.rollback()
            raise
    if closed:
        logger.info("operation=close-stale-sessions closed=%d", closed)
    return closed
