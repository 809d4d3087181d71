import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.ports.analytics import (
    AnalyticsRepository as AnalyticsRepositoryPort,
    SessionAnalyticsRow,
)
from ..models.academy import ContentItem, Course, CourseAccess
from ..models.profile import Profile
from ..models.viewing_session import PlaybackEvent, ViewingSession


async def list_assigned_course_ids(
    session: AsyncSession, teacher_id: uuid.UUID
) -> list[uuid.UUID]:
    stmt = (
        select(CourseAccess.course_id)
        .where(
            CourseAccess.profile_id == teacher_id,
            CourseAccess.access == "assigned",
        )
        .order_by(CourseAccess.created_at)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_student_session_rows(
    session: AsyncSession,
    *,
    academy_id: uuid.UUID,
    course_ids: list[uuid.UUID],
    student_id: uuid.UUID | None = None,
) -> list[SessionAnalyticsRow]:
    if not course_ids:
        return []

    events = (
        select(
            PlaybackEvent.session_id.label("session_id"),
            func.count(PlaybackEvent.id).label("event_count"),
            func.max(PlaybackEvent.occurred_at).label("last_event_at"),
        )
        .group_by(PlaybackEvent.session_id)
        .subquery()
    )

    stmt = (
        select(
            ViewingSession,
            Profile.full_name,
            Profile.email,
            ContentItem.title,
            Course.id.label("course_id"),
            Course.name.label("course_name"),
            func.coalesce(events.c.event_count, 0).label("event_count"),
            events.c.last_event_at,
        )
        .join(Profile, Profile.id == ViewingSession.user_id)
        .join(ContentItem, ContentItem.id == ViewingSession.content_id)
        .join(Course, Course.id == ContentItem.course_id)
        .outerjoin(events, events.c.session_id == ViewingSession.id)
        .where(
            Profile.role == "alumno",
            Profile.academy_id == academy_id,
            Course.id.in_(course_ids),
        )
        .order_by(ViewingSession.created_at.desc())
    )
    if student_id is not None:
        stmt = stmt.where(ViewingSession.user_id == student_id)

    result = await session.execute(stmt)
    rows: list[SessionAnalyticsRow] = []
    for (
        viewing_session,
        full_name,
        email,
        title,
        course_id,
        course_name,
        event_count,
        last_event_at,
    ) in result.all():
        rows.append(
            SessionAnalyticsRow(
                session_id=viewing_session.id,
                student_id=viewing_session.user_id,
                student_name=full_name,
                student_email=email,
                content_id=viewing_session.content_id,
                content_title=title,
                course_id=course_id,
                course_name=course_name,
                watched_seconds=viewing_session.watched_seconds,
                declared_duration_seconds=viewing_session.declared_duration_seconds,
                completion_percent=viewing_session.completion_percent,
                active=viewing_session.active,
                created_at=viewing_session.created_at,
                updated_at=viewing_session.updated_at,
                ended_at=viewing_session.ended_at,
                event_count=int(event_count or 0),
                last_event_at=last_event_at,
            )
        )
    return rows


class AnalyticsRepository(AnalyticsRepositoryPort):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def assigned_course_ids(self, teacher_id: uuid.UUID) -> list[uuid.UUID]:
        return await list_assigned_course_ids(self._session, teacher_id)

    async def student_session_rows(
        self,
        *,
        academy_id: uuid.UUID,
        course_ids: list[uuid.UUID],
        student_id: uuid.UUID | None = None,
    ) -> list[SessionAnalyticsRow]:
        return await list_student_session_rows(
            self._session,
            academy_id=academy_id,
            course_ids=course_ids,
            student_id=student_id,
        )
