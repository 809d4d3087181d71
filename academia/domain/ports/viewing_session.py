from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Protocol
import uuid


class ProfileData(Protocol):
    id: uuid.UUID
    email: str
    full_name: str | None
    role: str
    academy_id: uuid.UUID | None


class ContentData(Protocol):
    id: uuid.UUID
    course_id: uuid.UUID
    title: str
    duration_seconds: float | None


class ViewingSessionData(Protocol):
    id: uuid.UUID
    session_token: str
    user_id: uuid.UUID
    content_id: uuid.UUID
    declared_duration_seconds: float | None
    watched_seconds: float
    completion_percent: float
    active: bool
    ip_address: str | None
    user_agent: str | None
    created_at: datetime
    updated_at: datetime
    ended_at: datetime | None
    end_reason: str | None


class PlaybackEventData(Protocol):
    id: uuid.UUID
    session_id: uuid.UUID
    kind: str
    video_position_seconds: float
    occurred_at: datetime
    event_metadata: dict[str, Any] | None


class ViewingSessionRepository(Protocol):
    async def get_content(self, content_id: uuid.UUID) -> ContentData | None:
        ...

    async def lock_profile(self, user_id: uuid.UUID) -> ProfileData | None:
        """Load the profile row with a write lock held until commit/rollback."""
        ...

    async def has_course_access(
        self, user_id: uuid.UUID, course_id: uuid.UUID, access: str
    ) -> bool:
        ...

    async def list_active(
        self, user_id: uuid.UUID, *, updated_since: datetime | None = None
    ) -> list[ViewingSessionData]:
        """Active sessions of the user; only those touched since ``updated_since`` if given."""
        ...

    async def recent_client_pairs(
        self, user_id: uuid.UUID, *, since: datetime
    ) -> list[tuple[str | None, str | None]]:
        ...

    async def close_active_for_content(
        self, user_id: uuid.UUID, content_id: uuid.UUID, *, now: datetime
    ) -> int:
        ...

    async def close_all_active(self, user_id: uuid.UUID, *, now: datetime) -> int:
        ...

    async def close_stale(self, *, updated_before: datetime, now: datetime) -> int:
        ...

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
        ...

    async def get_owned(
        self, session_token: str, user_id: uuid.UUID, *, for_update: bool = False
    ) -> ViewingSessionData | None:
        ...

    async def update_watch_time(
        self,
        session: ViewingSessionData,
        watched_seconds: float,
        completion_percent: float,
        *,
        now: datetime,
    ) -> ViewingSessionData:
        ...

    async def close(
        self, session: ViewingSessionData, *, now: datetime, reason: str
    ) -> ViewingSessionData:
        ...

    async def reopen(self, session: ViewingSessionData, *, now: datetime) -> ViewingSessionData:
        """Make a swept session active again. Callers run the policy first."""
        ...

    async def touch(self, session: ViewingSessionData, *, now: datetime) -> None:
        ...

    async def add_event(
        self,
        session: ViewingSessionData,
        kind: str,
        video_position_seconds: float,
        metadata: dict[str, Any] | None,
        *,
        occurred_at: datetime,
    ) -> PlaybackEventData:
        ...

    async def commit(self) -> None:
        ...

    async def rollback(self) -> None:
        ...


ViewingSessionRepositoryFactory = Callable[
    [], AsyncContextManager[ViewingSessionRepository]
]
