import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

logger = logging.getLogger("academia.tracking.transport")

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BACKOFF_SECONDS = 0.5
SUSPICIOUS_ACTIVITY_CODE = "SUSPICIOUS_ACTIVITY"


class TrackingRequestError(Exception):
    """A sync or event call failed, or a start failed for a reason other than a denial.

    ``code`` and ``reason`` carry the server error envelope when there is one.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.reason = reason

    @property
    def denied_by_policy(self) -> bool:
        return self.status_code == 429 and self.code == SUSPICIOUS_ACTIVITY_CODE


class SessionBlockedError(Exception):
    """Session start was denied by the concurrency policy."""

    def __init__(self, reason: str, *, code: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.code = code


@dataclass(frozen=True)
class StartedSession:
    session_id: str
    warning: str | None = None


class TrackingTransport(Protocol):
    async def start_session(
        self,
        content_id: uuid.UUID,
        declared_duration_seconds: float | None = None,
        user_agent: str | None = None,
    ) -> StartedSession:
        ...

    async def sync_watch_time(self, session_id: str, cumulative_watched_seconds: float) -> None:
        ...

    async def record_event(
        self,
        session_id: str,
        kind: str,
        video_position_seconds: float,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    error = payload.get("error") if isinstance(payload, dict) else None
    return error if isinstance(error, dict) else {}


class HttpTrackingTransport:
    """httpx client for the ``/video`` tracking endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        access_token: str | None = None,
        token_provider: Callable[[], str | None] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be greater than or equal to 0")
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._max_retries = max_retries
        self._retry_backoff_seconds = retry_backoff_seconds

    def _headers(self) -> dict[str, str]:
        token = self._token_provider() if self._token_provider else self._access_token
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _post(
        self, path: str, payload: dict[str, Any], *, denial_blocks: bool = False
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        attempt = 0
        while True:
            try:
                response = await self._client.post(url, json=payload, headers=self._headers())
                break
            except httpx.TransportError as exc:
                if attempt >= self._max_retries:
                    raise TrackingRequestError(f"{path} failed: {exc}") from exc
                attempt += 1
                logger.debug("retrying path=%s attempt=%d error=%s", path, attempt, exc)
                await asyncio.sleep(self._retry_backoff_seconds * attempt)

        if response.status_code >= 400:
            error = _error_body(response)
            details = error.get("details") if isinstance(error.get("details"), dict) else {}
            message = error.get("message") or f"HTTP {response.status_code}"
            reason = str(details.get("reason") or message)
            # Only a start can be blocked; sync/event callers handle 429 themselves
            if response.status_code == 429 and denial_blocks:
                raise SessionBlockedError(reason, code=error.get("code"))
            raise TrackingRequestError(
                f"{path} failed: {message}",
                status_code=response.status_code,
                code=error.get("code"),
                reason=reason,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TrackingRequestError(f"{path} returned invalid JSON") from exc

    async def start_session(
        self,
        content_id: uuid.UUID,
        declared_duration_seconds: float | None = None,
        user_agent: str | None = None,
    ) -> StartedSession:
        payload: dict[str, Any] = {"content_id": str(content_id)}
        if declared_duration_seconds is not None:
            payload["declared_duration_seconds"] = declared_duration_seconds
        if user_agent is not None:
            payload["user_agent"] = user_agent
        body = await self._post("/video/start-session", payload, denial_blocks=True)
        session = body.get("session") or {}
        session_id = session.get("session_id")
        if not session_id:
            raise TrackingRequestError("/video/start-session returned no session id")
        return StartedSession(session_id=session_id, warning=body.get("warning"))

    async def sync_watch_time(self, session_id: str, cumulative_watched_seconds: float) -> None:
        await self._post(
            "/video/update-time",
            {
                "session_id": session_id,
                "cumulative_watched_seconds": cumulative_watched_seconds,
            },
        )

    async def record_event(
        self,
        session_id: str,
        kind: str,
        video_position_seconds: float,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._post(
            "/video/track-event",
            {
                "session_id": session_id,
                "event_kind": kind,
                "video_position_seconds": video_position_seconds,
                "metadata": metadata,
            },
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
