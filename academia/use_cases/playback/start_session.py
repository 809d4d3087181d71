import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from ...domain.policy import (
    CHECK_FAILED_REASON,
    ClientFootprint,
    ConcurrencyPolicy,
    PolicyVerdict,
)
from ...domain.ports.viewing_session import (
    ContentData,
    ProfileData,
    ViewingSessionData,
    ViewingSessionRepository,
)
from ...errors import AppError, AuthError, NotFoundError, PermissionError, SuspiciousActivityError
from ...schemas.playback import StartSessionResponse, ViewingSessionRead

logger = logging.getLogger(__name__)

SESSION_CHECK_FAILED_CODE = "SESSION_CHECK_FAILED"
# Which course_access kind lets each role open a recorded class
ACCESS_BY_ROLE = {"alumno": "purchased", "profesor": "assigned"}


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


async def _ensure_course_access(
    repo: ViewingSessionRepository, profile: ProfileData, content: ContentData
) -> None:
    access = ACCESS_BY_ROLE.get(profile.role)
    if access is None:
        raise PermissionError("Only students and teachers can watch recorded classes")
    if not await repo.has_course_access(profile.id, content.course_id, access):
        raise PermissionError("You do not have access to this course")


async def _load_policy_inputs(
    repo: ViewingSessionRepository,
    user_id: uuid.UUID,
    content: ContentData,
    *,
    ip_address: str | None,
    user_agent: str | None,
    now: datetime,
    stale_after: timedelta,
    recent_window: timedelta,
) -> tuple[list[ViewingSessionData], ClientFootprint]:
    # Serialises concurrent starts of the same user until commit/rollback
    profile = await repo.lock_profile(user_id)
    if profile is None:
        raise AuthError("Profile not found")
    await _ensure_course_access(repo, profile, content)

    # Reopening a video replaces the previous attempt on that video
    replaced = await repo.close_active_for_content(user_id, content.id, now=now)
    if replaced:
        logger.info(
            "operation=start-session action=replace user_id=%s content_id=%s closed=%d",
            user_id,
            content.id,
            replaced,
        )

    active = await repo.list_active(user_id, updated_since=now - stale_after)
    pairs = await repo.recent_client_pairs(user_id, since=now - recent_window)
    footprint = ClientFootprint.from_pairs(pairs).including(ip_address, user_agent)
    return active, footprint


async def _rollback_quietly(repo: ViewingSessionRepository) -> None:
    try:
        await repo.rollback()
    except Exception:
        logger.warning("operation=start-session action=rollback-failed", exc_info=True)


async def start_session(
    repo: ViewingSessionRepository,
    user_id: uuid.UUID,
    content_id: uuid.UUID,
    *,
    policy: ConcurrencyPolicy,
    declared_duration_seconds: float | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    stale_after_seconds: float = 120,
    recent_window_hours: float = 24,
    now: datetime | None = None,
) -> StartSessionResponse:
    """
    Open a viewing session after the concurrency policy allows it.

    The policy check and the insert share one transaction. On DENY the
    transaction is rolled back: no session is created and no existing
    session is closed. If the store cannot answer the check the start is
    denied, never allowed.
    """
    now = now or datetime.now(timezone.utc)

    content = await repo.get_content(content_id)
    if content is None:
        raise NotFoundError("Content not found")
    if declared_duration_seconds is None:
        declared_duration_seconds = content.duration_seconds

    try:
        active, footprint = await _load_policy_inputs(
            repo,
            user_id,
            content,
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
            stale_after=timedelta(seconds=stale_after_seconds),
            recent_window=timedelta(hours=recent_window_hours),
        )
    except AppError:
        await _rollback_quietly(repo)
        raise
    except Exception:
        logger.error(
            "operation=start-session action=deny reason=check_failed user_id=%s content_id=%s",
            user_id,
            content_id,
            exc_info=True,
        )
        await _rollback_quietly(repo)
        raise SuspiciousActivityError(CHECK_FAILED_REASON, code=SESSION_CHECK_FAILED_CODE) from None

    decision = policy.evaluate(active, footprint)
    if not decision.allowed:
        await _rollback_quietly(repo)
        logger.warning(
            "operation=start-session action=deny reason=concurrent_sessions user_id=%s "
            "content_id=%s active=%d",
            user_id,
            content_id,
            len(active),
        )
        raise SuspiciousActivityError(decision.message)

    try:
        created = await repo.create(
            session_token=new_session_token(),
            user_id=user_id,
            content_id=content_id,
            declared_duration_seconds=declared_duration_seconds,
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
        result = ViewingSessionRead.model_validate(created)
        await repo.commit()
    except Exception:
        # Includes a lost race on the one-active-session-per-content index
        logger.error(
            "operation=start-session action=deny reason=insert_failed user_id=%s content_id=%s",
            user_id,
            content_id,
            exc_info=True,
        )
        await _rollback_quietly(repo)
        raise SuspiciousActivityError(CHECK_FAILED_REASON, code=SESSION_CHECK_FAILED_CODE) from None

    warning = decision.message if decision.verdict is PolicyVerdict.WARN else None
    logger.info(
        "operation=start-session action=create user_id=%s content_id=%s verdict=%s",
        user_id,
        content_id,
        decision.verdict.value,
    )
    return StartSessionResponse(session=result, warning=warning)
