import uuid
from collections import defaultdict
from collections.abc import Sequence

from ...domain.invariants import completion_percent
from ...domain.ports.analytics import AnalyticsRepository, SessionAnalyticsRow
from ...domain.ports.viewing_session import ProfileData
from ...errors import PermissionError
from ...schemas.playback import (
    AnalyticsResponse,
    AnalyticsStats,
    ContentProgress,
    StudentAnalytics,
    StudentRef,
    StudentSummary,
)

COMPLETED_THRESHOLD_PERCENT = 80.0


def _mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def build_stats(rows: Sequence[SessionAnalyticsRow]) -> AnalyticsStats:
    return AnalyticsStats(
        total_sessions=len(rows),
        active_sessions=sum(1 for row in rows if row.active),
        total_watch_seconds=round(sum(row.watched_seconds for row in rows), 2),
        average_completion=_mean([row.completion_percent for row in rows]),
        unique_students=len({row.student_id for row in rows}),
    )


def _content_progress(rows: list[SessionAnalyticsRow]) -> ContentProgress:
    first = rows[0]
    total_watched = sum(row.watched_seconds for row in rows)
    durations = [
        row.declared_duration_seconds
        for row in sorted(rows, key=lambda row: row.created_at)
        if row.declared_duration_seconds
    ]
    duration = durations[-1] if durations else None
    if duration:
        percent = completion_percent(total_watched, duration)
    else:
        percent = max(row.completion_percent for row in rows)
    return ContentProgress(
        content_id=first.content_id,
        title=first.content_title,
        course_id=first.course_id,
        course_name=first.course_name,
        total_watched_seconds=round(total_watched, 2),
        declared_duration_seconds=duration,
        completion_percent=round(percent, 2),
        session_count=len(rows),
        first_session_at=min(row.created_at for row in rows),
        last_session_at=max(row.created_at for row in rows),
        event_count=sum(row.event_count for row in rows),
    )


def build_student_analytics(
    rows: Sequence[SessionAnalyticsRow],
) -> list[StudentAnalytics]:
    """Group session rows per student and per content item."""
    by_student: dict[uuid.UUID, dict[uuid.UUID, list[SessionAnalyticsRow]]] = defaultdict(
        lambda: defaultdict(list)
    )
    refs: dict[uuid.UUID, StudentRef] = {}
    for row in rows:
        by_student[row.student_id][row.content_id].append(row)
        refs.setdefault(
            row.student_id,
            StudentRef(id=row.student_id, full_name=row.student_name, email=row.student_email),
        )

    students: list[StudentAnalytics] = []
    for student_id, contents in by_student.items():
        progress = sorted(
            (_content_progress(content_rows) for content_rows in contents.values()),
            key=lambda item: item.last_session_at,
            reverse=True,
        )
        summary = StudentSummary(
            total_watch_seconds=round(sum(p.total_watched_seconds for p in progress), 2),
            contents_viewed=len(progress),
            contents_completed=sum(
                1 for p in progress if p.completion_percent >= COMPLETED_THRESHOLD_PERCENT
            ),
            course_progress=_mean([p.completion_percent for p in progress]),
        )
        students.append(
            StudentAnalytics(student=refs[student_id], contents=progress, summary=summary)
        )

    students.sort(key=lambda item: (item.student.full_name or item.student.email).lower())
    return students


async def get_teacher_analytics(
    repo: AnalyticsRepository,
    profile: ProfileData,
    *,
    course_id: uuid.UUID | None = None,
    student_id: uuid.UUID | None = None,
) -> AnalyticsResponse:
    if profile.role != "profesor" or profile.academy_id is None:
        raise PermissionError("Only teachers can view student analytics")

    course_ids = await repo.assigned_course_ids(profile.id)
    if course_id is not None:
        if course_id not in course_ids:
            raise PermissionError("You are not assigned to this course")
        course_ids = [course_id]

    rows = await repo.student_session_rows(
        academy_id=profile.academy_id,
        course_ids=course_ids,
        student_id=student_id,
    )
    return AnalyticsResponse(stats=build_stats(rows), students=build_student_analytics(rows))
