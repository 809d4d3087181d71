import uuid

from fastapi import APIRouter, Depends, Request

from ..dependencies import (
    client_ip,
    get_analytics_port,
    get_concurrency_policy,
    get_current_profile,
    get_viewing_session_port,
)
from ..config import settings
from ..domain.policy import ConcurrencyPolicy
from ..models.profile import Profile
from ..schemas.playback import (
    AnalyticsResponse,
    CleanupSessionsResponse,
    StartSessionRequest,
    StartSessionResponse,
    TrackEventRequest,
    TrackEventResponse,
    UpdateTimeRequest,
    UpdateTimeResponse,
)
from ..use_cases.playback.analytics import get_teacher_analytics
from ..use_cases.playback.cleanup_sessions import cleanup_sessions
from ..use_cases.playback.record_event import record_event
from ..use_cases.playback.start_session import start_session
from ..use_cases.playback.sync_watch_time import sync_watch_time

router = APIRouter(prefix="/video", tags=["video"])


@router.post("/start-session", response_model=StartSessionResponse)
async def start_viewing_session(
    payload: StartSessionRequest,
    request: Request,
    profile: Profile = Depends(get_current_profile),
    repo=Depends(get_viewing_session_port),
    policy: ConcurrencyPolicy = Depends(get_concurrency_policy),
) -> StartSessionResponse:
    return await start_session(
        repo,
        profile.id,
        payload.content_id,
        policy=policy,
        declared_duration_seconds=payload.declared_duration_seconds,
        ip_address=client_ip(request),
        user_agent=payload.user_agent or request.headers.get("user-agent"),
        stale_after_seconds=settings.tracking_stale_session_seconds,
        recent_window_hours=settings.tracking_recent_window_hours,
    )


@router.post("/update-time", response_model=UpdateTimeResponse)
async def update_watch_time(
    payload: UpdateTimeRequest,
    profile: Profile = Depends(get_current_profile),
    repo=Depends(get_viewing_session_port),
    policy: ConcurrencyPolicy = Depends(get_concurrency_policy),
) -> UpdateTimeResponse:
    return await sync_watch_time(
        repo,
        profile.id,
        payload.session_id,
        payload.cumulative_watched_seconds,
        policy=policy,
        stale_after_seconds=settings.tracking_stale_session_seconds,
    )


@router.post("/track-event", response_model=TrackEventResponse)
async def track_event(
    payload: TrackEventRequest,
    profile: Profile = Depends(get_current_profile),
    repo=Depends(get_viewing_session_port),
    policy: ConcurrencyPolicy = Depends(get_concurrency_policy),
) -> TrackEventResponse:
    return await record_event(
        repo,
        profile.id,
        payload.session_id,
        payload.event_kind,
        payload.video_position_seconds,
        payload.metadata,
        policy=policy,
        stale_after_seconds=settings.tracking_stale_session_seconds,
    )


@router.post("/cleanup-sessions", response_model=CleanupSessionsResponse)
async def cleanup_own_sessions(
    profile: Profile = Depends(get_current_profile),
    repo=Depends(get_viewing_session_port),
) -> CleanupSessionsResponse:
    return await cleanup_sessions(repo, profile.id)


@router.get("/analytics", response_model=AnalyticsResponse)
async def student_analytics(
    course_id: uuid.UUID | None = None,
    student_id: uuid.UUID | None = None,
    profile: Profile = Depends(get_current_profile),
    repo=Depends(get_analytics_port),
) -> AnalyticsResponse:
    return await get_teacher_analytics(
        repo, profile, course_id=course_id, student_id=student_id
    )
