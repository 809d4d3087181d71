import logging
import uuid
from datetime import datetime, timedelta, timezone

from ...domain.invariants import (
    InvariantViolation,
    completion_percent,
    is_forward_watch_time,
    log_invariant_skip,
    validate_watch_time_bounds,
)
from ...domain.policy import ConcurrencyPolicy
from ...domain.ports.viewing_session import ViewingSessionRepository
from ...errors import NotFoundError, ValidationError
from ...schemas.playback import UpdateTimeResponse, ViewingSessionRead
from .resume_session import ensure_counted, is_lapsed

logger = logging.getLogger(__name__)


async def sync_watch_time(
    repo: ViewingSessionRepository,
    user_id: uuid.UUID,
    session_token: str,
    cumulative_watched_seconds: float,
    *,
    policy: ConcurrencyPolicy | None = None,
    stale_after_seconds: float = 120,
    now: datetime | None = None,
) -> UpdateTimeResponse:
    """
    Store the client's absolute watch-time total for a session.

    IDEMPOTENCY KEY: (session_token, cumulative_watched_seconds)
    The persisted value becomes max(persisted, incoming), so duplicated or
    reordered deliveries never double count and never move it backwards.
    Closed sessions still accept a final sync that raced the close event.
    A forward total on a session the sweeper closed (or that went stale)
    means the player resumed: the concurrency policy runs again first.
    """
    try:
        validate_watch_time_bounds(cumulative_watched_seconds)
    except InvariantViolation as exc:
        raise ValidationError(str(exc), details=exc.details) from exc

    now = now or datetime.now(timezone.utc)
    policy = policy or ConcurrencyPolicy()
    try:
        session = await repo.get_owned(session_token, user_id, for_update=True)
        if session is None:
            raise NotFoundError("Viewing session not found")

        if not is_forward_watch_time(session.watched_seconds, cumulative_watched_seconds):
            log_invariant_skip(
                "watch_time.monotonic",
                "not_forward",
                session_id=session.id,
                persisted=session.watched_seconds,
                incoming=cumulative_watched_seconds,
            )
            # A repeated total from a live player still proves the session is alive
            if session.active and not is_lapsed(
                session, now=now, stale_after=timedelta(seconds=stale_after_seconds)
            ):
                await repo.touch(session, now=now)
            result = UpdateTimeResponse(
                session=ViewingSessionRead.model_validate(session), applied=False
            )
            await repo.commit()
            return result

        await ensure_counted(
            repo,
            session,
            policy=policy,
            stale_after_seconds=stale_after_seconds,
            now=now,
        )
        await repo.update_watch_time(
            session,
            cumulative_watched_seconds,
            completion_percent(
                cumulative_watched_seconds, session.declared_duration_seconds
            ),
            now=now,
        )
        result = UpdateTimeResponse(
            session=ViewingSessionRead.model_validate(session), applied=True
        )
        await repo.commit()
    except Exception:
        await repo.rollback()
        raise

    logger.info(
        "operation=update-time action=apply session_id=%s watched_seconds=%.2f",
        result.session.session_id,
        cumulative_watched_seconds,
    )
    return result
