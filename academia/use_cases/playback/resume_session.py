import logging
from datetime import datetime, timedelta, timezone

from ...domain.invariants import RESUMABLE_END_REASONS
from ...domain.policy import ConcurrencyPolicy
from ...domain.ports.viewing_session import ViewingSessionData, ViewingSessionRepository
from ...errors import AuthError, SuspiciousActivityError

logger = logging.getLogger(__name__)

REPLACED_ELSEWHERE_REASON = (
    "This video was opened again in another window. Continue watching there."
)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_lapsed(session: ViewingSessionData, *, now: datetime, stale_after: timedelta) -> bool:
    """
    True when the policy no longer counts the session.

    That is an active session with no liveness for ``stale_after``, or one
    already closed by the stale-session sweeper.
    """
    if session.active:
        return _as_utc(session.updated_at) < now - stale_after
    return session.end_reason in RESUMABLE_END_REASONS


async def ensure_counted(
    repo: ViewingSessionRepository,
    session: ViewingSessionData,
    *,
    policy: ConcurrencyPolicy,
    stale_after_seconds: float,
    now: datetime,
) -> bool:
    """
    Put a lapsed session back under the concurrency policy before it streams again.

    Runs inside the caller's transaction and under the same profile lock as
    a session start. On DENY raises ``SuspiciousActivityError``; the caller
    rolls back, so the session stays closed (or stale) and nothing is
    recorded. Returns True when the session was brought back.
    """
    stale_after = timedelta(seconds=stale_after_seconds)
    if not is_lapsed(session, now=now, stale_after=stale_after):
        return False

    profile = await repo.lock_profile(session.user_id)
    if profile is None:
        raise AuthError("Profile not found")

    others = [s for s in await repo.list_active(session.user_id) if s.id != session.id]
    if not session.active and any(s.content_id == session.content_id for s in others):
        logger.warning(
            "operation=resume-session action=deny reason=replaced session_id=%s user_id=%s",
            session.id,
            session.user_id,
        )
        raise SuspiciousActivityError(REPLACED_ELSEWHERE_REASON)

    counted = [s for s in others if _as_utc(s.updated_at) >= now - stale_after]
    decision = policy.evaluate(counted)
    if not decision.allowed:
        logger.warning(
            "operation=resume-session action=deny reason=concurrent_sessions session_id=%s "
            "user_id=%s active=%d",
            session.id,
            session.user_id,
            len(counted),
        )
        raise SuspiciousActivityError(decision.message)

    if session.active:
        await repo.touch(session, now=now)
    else:
        await repo.reopen(session, now=now)
    logger.info(
        "operation=resume-session action=resume session_id=%s user_id=%s verdict=%s",
        session.id,
        session.user_id,
        decision.verdict.value,
    )
    return True
