import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from ...domain.invariants import (
    CLOSING_EVENT_KINDS,
    InvariantViolation,
    validate_event_kind,
    validate_position_bounds,
)
from ...domain.policy import ConcurrencyPolicy
from ...domain.ports.viewing_session import ViewingSessionRepository
from ...errors import NotFoundError, ValidationError
from ...schemas.playback import TrackEventResponse, ViewingSessionRead
from .resume_session import ensure_counted, is_lapsed

logger = logging.getLogger(__name__)

# Event kinds that mean the player streams again
RESUMING_EVENT_KINDS = frozenset({"play"})


async def record_event(
    repo: ViewingSessionRepository,
    user_id: uuid.UUID,
    session_token: str,
    kind: str,
    video_position_seconds: float,
    metadata: dict[str, Any] | None = None,
    *,
    policy: ConcurrencyPolicy | None = None,
    stale_after_seconds: float = 120,
    now: datetime | None = None,
) -> TrackEventResponse:
    """Append a playback event. ``ended``/``close`` also close the session.

    A ``play`` on a session the sweeper closed (or that went stale) is a
    resume and passes the concurrency policy again before it is recorded.
    """
    try:
        validate_event_kind(kind)
        validate_position_bounds(video_position_seconds)
    except InvariantViolation as exc:
        raise ValidationError(str(exc), details=exc.details) from exc

    now = now or datetime.now(timezone.utc)
    policy = policy or ConcurrencyPolicy()
    try:
        session = await repo.get_owned(session_token, user_id, for_update=True)
        if session is None:
            raise NotFoundError("Viewing session not found")

        if kind in RESUMING_EVENT_KINDS:
            await ensure_counted(
                repo,
                session,
                policy=policy,
                stale_after_seconds=stale_after_seconds,
                now=now,
            )

        await repo.add_event(
            session, kind, video_position_seconds, metadata, occurred_at=now
        )
        if kind in CLOSING_EVENT_KINDS:
            await repo.close(session, now=now, reason=kind)
        elif session.active and not is_lapsed(
            session, now=now, stale_after=timedelta(seconds=stale_after_seconds)
        ):
            await repo.touch(session, now=now)

        result = TrackEventResponse(session=ViewingSessionRead.model_validate(session))
        await repo.commit()
    except Exception:
        await repo.rollback()
        raise

    logger.info(
        "operation=track-event kind=%s session_id=%s position=%.2f active=%s",
        kind,
        session_token,
        video_position_seconds,
        result.session.active,
    )
    return result
