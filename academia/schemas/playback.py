from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

PlaybackEventKind = Literal["play", "pause", "seek", "ended", "close"]


class StartSessionRequest(BaseModel):
    content_id: UUID
    declared_duration_seconds: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    user_agent: str | None = Field(default=None, max_length=1024)


class ViewingSessionRead(BaseModel):
    """Viewing session as seen by the player; ``session_id`` is the opaque token."""

    session_id: str = Field(validation_alias="session_token")
    content_id: UUID
    declared_duration_seconds: float | None = None
    watched_seconds: float
    completion_percent: float
    active: bool
    created_at: datetime
    updated_at: datetime
    ended_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class StartSessionResponse(BaseModel):
    session: ViewingSessionRead
    warning: str | None = None


class UpdateTimeRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=64)
    cumulative_watched_seconds: float = Field(ge=0, allow_inf_nan=False)


class UpdateTimeResponse(BaseModel):
    session: ViewingSessionRead
    applied: bool


class TrackEventRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=64)
    event_kind: PlaybackEventKind
    video_position_seconds: float = Field(ge=0, allow_inf_nan=False)
    metadata: dict[str, Any] | None = None


class TrackEventResponse(BaseModel):
    session: ViewingSessionRead


class CleanupSessionsResponse(BaseModel):
    closed: int


class AnalyticsStats(BaseModel):
    total_sessions: int
    active_sessions: int
    total_watch_seconds: float
    average_completion: float
    unique_students: int


class StudentRef(BaseModel):
    id: UUID
    full_name: str | None = None
    email: str


class ContentProgress(BaseModel):
    content_id: UUID
    title: str
    course_id: UUID
    course_name: str
    total_watched_seconds: float
    declared_duration_seconds: float | None = None
    completion_percent: float
    session_count: int
    first_session_at: datetime
    last_session_at: datetime
    event_count: int


class StudentSummary(BaseModel):
    total_watch_seconds: float
    contents_viewed: int
    contents_completed: int
    course_progress: float


class StudentAnalytics(BaseModel):
    student: StudentRef
    contents: list[ContentProgress]
    summary: StudentSummary


class AnalyticsResponse(BaseModel):
    stats: AnalyticsStats
    students: list[StudentAnalytics]
