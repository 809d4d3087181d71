from __future__ import annotations

from datetime import datetime
import uuid
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class SessionAnalyticsRow:
    """One viewing session of a student, joined with its content and course."""

    session_id: uuid.UUID
    student_id: uuid.UUID
    student_name: str | None
    student_email: str
    content_id: uuid.UUID
    content_title: str
    course_id: uuid.UUID
    course_name: str
    watched_seconds: float
    declared_duration_seconds: float | None
    completion_percent: float
    active: bool
    created_at: datetime
    updated_at: datetime
    ended_at: datetime | None
    event_count: int
    last_event_at: datetime | None


class AnalyticsRepository(Protocol):
    async def assigned_course_ids(self, teacher_id: uuid.UUID) -> list[uuid.UUID]:
        ...

    async def student_session_rows(
        self,
        *,
        academy_id: uuid.UUID,
        course_ids: list[uuid.UUID],
        student_id: uuid.UUID | None = None,
    ) -> list[SessionAnalyticsRow]:
        ...
