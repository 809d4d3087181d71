import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.invariants import END_REASON_CLEANUP, END_REASON_REPLACED, END_REASON_STALE
from ..domain.ports.viewing_session import (
    ContentData,
    PlaybackEventData,
    ProfileData,
    ViewingSessionData,
    ViewingSessionRepository as ViewingSessionRepositoryPort,
)
from ..models.academy import ContentItem, CourseAccess
from ..models.profile import Profile
from ..models.viewing_session import PlaybackEvent, ViewingSession


async def lock_profile(session: AsyncSession, user_id: uuid.UUID) -> Profile | None:
    # Row lock serialises every session start of one user (no-op on SQLite,
    # which serialises writers on its own).
    stmt = select(Profile).where(Profile.id == user_id).with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def has_course_access(
    session: AsyncSession, user_id: uuid.UUID, course_id: uuid.UUID, access: str
) -> bool:
    stmt = select(CourseAccess.id).where(
        CourseAccess.profile_id == user_id,
        CourseAccess.course_id == course_id,
        CourseAccess.access == access,
    )
    result = await session.execute(stmt)
    return result.first() is not None


async def list_active_sessions(
    session: AsyncSession, user_id: uuid.UUID, updated_since: datetime | None = None
) -> list[ViewingSession]:
    stmt = select(ViewingSession).where(
        ViewingSession.user_id == user_id,
        ViewingSession.active.is_(True),
    )
    if updated_since is not None:
        stmt = stmt.where(ViewingSession.updated_at >= updated_since)
    stmt = stmt.order_by(ViewingSession.created_at)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_recent_client_pairs(
    session: AsyncSession, user_id: uuid.UUID, since: datetime
) -> list[tuple[str | None, str | None]]:
    stmt = (
        select(ViewingSession.ip_address, ViewingSession.user_agent)
        .where(
            ViewingSession.user_id == user_id,
            ViewingSession.created_at >= since,
        )
        .distinct()
    )
    result = await session.execute(stmt)
    return [(row.ip_address, row.user_agent) for row in result]


async def close_sessions(
    session: AsyncSession, *conditions: Any, now: datetime, reason: str
) -> int:
    stmt = (
        update(ViewingSession)
        .where(ViewingSession.active.is_(True), *conditions)
        .values(active=False, ended_at=now, updated_at=now, end_reason=reason)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


async def create_viewing_session(
    session: AsyncSession,
    *,
    session_token: str,
    user_id: uuid.UUID,
    content_id: uuid.UUID,
    declared_duration_seconds: float | None,
    ip_address: str | None,
    user_agent: str | None,
    now: datetime,
) -> ViewingSession:
    viewing_session = ViewingSession(
        id=uuid.uuid4(),
        session_token=session_token,
        user_id=user_id,
        content_id=content_id,
        declared_duration_seconds=declared_duration_seconds,
        watched_seconds=0.0,
        completion_percent=0.0,
        active=True,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=now,
        updated_at=now,
    )
    session.add(viewing_session)
    await session.flush()
    return viewing_session


async def get_owned_session(
    session: AsyncSession,
    session_token: str,
    user_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> ViewingSession | None:
    stmt = select(ViewingSession).where(
        ViewingSession.session_token == session_token,
        ViewingSession.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def add_playback_event(
    session: AsyncSession,
    viewing_session_id: uuid.UUID,
    kind: str,
    video_position_seconds: float,
    metadata: dict[str, Any] | None,
    occurred_at: datetime,
) -> PlaybackEvent:
    event = PlaybackEvent(
        id=uuid.uuid4(),
        session_id=viewing_session_id,
        kind=kind,
        video_position_seconds=video_position_seconds,
        occurred_at=occurred_at,
        event_metadata=metadata,
    )
    session.add(event)
    await session.flush()
    return event


class ViewingSessionRepository(ViewingSessionRepositoryPort):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_content(self, content_id: uuid.UUID) -> ContentData | None:
        return await self._session.get(ContentItem, content_id)

    async def lock_profile(self, user_id: uuid.UUID) -> ProfileData | None:
        return await lock_profile(self._session, user_id)

    async def has_course_access(
        self, user_id: uuid.UUID, course_id: uuid.UUID, access: str
    ) -> bool:
        return await has_course_access(self._session, user_id, course_id, access)

    async def list_active(
        self, user_id: uuid.UUID, *, updated_since: datetime | None = None
    ) -> list[ViewingSessionData]:
        return await list_active_sessions(self._session, user_id, updated_since)

    async def recent_client_pairs(
        self, user_id: uuid.UUID, *, since: datetime
    ) -> list[tuple[str | None, str | None]]:
        return await list_recent_client_pairs(self._session, user_id, since)

    async def close_active_for_content(
        self, user_id: uuid.UUID, content_id: uuid.UUID, *, now: datetime
    ) -> int:
        return await close_sessions(
            self._session,
            ViewingSession.user_id == user_id,
            ViewingSession.content_id == content_id,
            now=now,
            reason=END_REASON_REPLACED,
        )

    async def close_all_active(self, user_id: uuid.UUID, *, now: datetime) -> int:
        return await close_sessions(
            self._session,
            ViewingSession.user_id == user_id,
            now=now,
            reason=END_REASON_CLEANUP,
        )

    async def close_stale(self, *, updated_before: datetime, now: datetime) -> int:
        return await close_sessions(
            self._session,
            ViewingSession.updated_at < updated_before,
            now=now,
            reason=END_REASON_STALE,
        )

    async def create(
        self,
        *,
        session_token: str,
        user_id: uuid.UUID,
        content_id: uuid.UUID,
        declared_duration_seconds: float | None,
        ip_address: str | None,
        user_agent: str | None,
        now: datetime,
    ) -> ViewingSessionData:
        return await create_viewing_session(
            self._session,
            session_token=session_token,
            user_id=user_id,
            content_id=content_id,
            declared_duration_seconds=declared_duration_seconds,
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )

    async def get_owned(
        self, session_token: str, user_id: uuid.UUID, *, for_update: bool = False
    ) -> ViewingSessionData | None:
        return await get_owned_session(
            self._session, session_token, user_id, for_update=for_update
        )

    async def update_watch_time(
        self,
        session: ViewingSessionData,
        watched_seconds: float,
        completion_percent: float,
        *,
        now: datetime,
    ) -> ViewingSessionData:
        session.watched_seconds = watched_seconds
        session.completion_percent = completion_percent
        session.updated_at = now
        await self._session.flush()
        return session

    async def close(
        self, session: ViewingSessionData, *, now: datetime, reason: str
    ) -> ViewingSessionData:
        if session.active:
            session.active = False
            session.ended_at = now
        # An explicit close also settles a sweeper closure for good
        session.end_reason = reason
        session.updated_at = now
        await self._session.flush()
        return session

    async def reopen(self, session: ViewingSessionData, *, now: datetime) -> ViewingSessionData:
        session.active = True
        session.ended_at = None
        session.end_reason = None
        session.updated_at = now
        await self._session.flush()
        return session

    async def touch(self, session: ViewingSessionData, *, now: datetime) -> None:
        session.updated_at = now
        await self._session.flush()

    async def add_event(
        self,
        session: ViewingSessionData,
        kind: str,
        video_position_seconds: float,
        metadata: dict[str, Any] | None,
        *,
        occurred_at: datetime,
    ) -> PlaybackEventData:
        return await add_playback_event(
            self._session,
            session.id,
            kind,
            video_position_seconds,
            metadata,
            occurred_at,
        )

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
