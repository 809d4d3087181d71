import json
import uuid

import httpx
import pytest

from academia.tracking.transport import (
    HttpTrackingTransport,
    SessionBlockedError,
    TrackingRequestError,
)

CONTENT_ID = uuid.uuid4()


def session_body(token: str = "token-1") -> dict:
    return {
        "session": {
            "session_id": token,
            "content_id": str(CONTENT_ID),
            "watched_seconds": 0.0,
            "completion_percent": 0.0,
            "active": True,
            "created_at": "2026-03-01T12:00:00Z",
            "updated_at": "2026-03-01T12:00:00Z",
        },
        "warning": None,
    }


def make_transport(handler, **kwargs) -> HttpTrackingTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_backoff_seconds", 0)
    return HttpTrackingTransport("http://api.test/", client=client, **kwargs)


@pytest.mark.anyio
async def test_start_session_posts_payload_with_bearer_token() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=session_body())

    transport = make_transport(handler, access_token="jwt-token")

    started = await transport.start_session(
        CONTENT_ID, declared_duration_seconds=600.0, user_agent="Firefox"
    )

    assert started.session_id == "token-1"
    assert started.warning is None
    request = seen[0]
    assert str(request.url) == "http://api.test/video/start-session"
    assert request.headers["Authorization"] == "Bearer jwt-token"
    assert json.loads(request.content) == {
        "content_id": str(CONTENT_ID),
        "declared_duration_seconds": 600.0,
        "user_agent": "Firefox",
    }


@pytest.mark.anyio
async def test_token_provider_is_read_per_request() -> None:
    tokens = iter(["first", "second"])
    headers = []

    def handler(request: httpx.Request) -> httpx.Response:
        headers.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"session": {}, "applied": True})

    transport = make_transport(handler, token_provider=lambda: next(tokens))

    await transport.sync_watch_time("token-1", 10.0)
    await transport.sync_watch_time("token-1", 20.0)

    assert headers == ["Bearer first", "Bearer second"]


@pytest.mark.anyio
async def test_denial_maps_to_session_blocked_with_reason() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={
                "error": {
                    "code": "SUSPICIOUS_ACTIVITY",
                    "message": "Multiple sessions",
                    "details": {"reason": "Close your other devices"},
                }
            },
        )

    transport = make_transport(handler)

    with pytest.raises(SessionBlockedError) as exc_info:
        await transport.start_session(CONTENT_ID)

    assert exc_info.value.reason == "Close your other devices"
    assert exc_info.value.code == "SUSPICIOUS_ACTIVITY"


@pytest.mark.anyio
async def test_server_error_maps_to_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            500, json={"error": {"code": "INTERNAL_ERROR", "message": "Internal server error"}}
        )

    transport = make_transport(handler)

    with pytest.raises(TrackingRequestError) as exc_info:
        await transport.record_event("token-1", "pause", 12.0, {"reason": "tab_hidden"})

    assert exc_info.value.status_code == 500
    assert "Internal server error" in str(exc_info.value)


@pytest.mark.anyio
async def test_network_errors_are_retried() -> None:
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"session": {}})

    transport = make_transport(handler, max_retries=2)

    await transport.record_event("token-1", "play", 0.0)

    assert len(attempts) == 3
    assert json.loads(attempts[-1].content)["event_kind"] == "play"


@pytest.mark.anyio
async def test_network_errors_give_up_after_retries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = make_transport(handler, max_retries=1)

    with pytest.raises(TrackingRequestError):
        await transport.sync_watch_time("token-1", 5.0)


@pytest.mark.anyio
async def test_missing_session_id_is_an_error() -> None:
    transport = make_transport(lambda request: httpx.Response(200, json={"session": {}}))

    with pytest.raises(TrackingRequestError):
        await transport.start_session(CONTENT_ID)


def test_negative_retries_are_rejected() -> None:
    with pytest.raises(ValueError):
        HttpTrackingTransport("http://api.test", max_retries=-1)


@pytest.mark.anyio
async def test_throttled_sync_is_a_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"code": "RATE_LIMITED", "message": "slow down"}})

    transport = make_transport(handler)

    with pytest.raises(TrackingRequestError) as exc_info:
        await transport.sync_watch_time("token-1", 30.0)

    assert exc_info.value.status_code == 429
    assert exc_info.value.code == "RATE_LIMITED"
    assert exc_info.value.denied_by_policy is False


@pytest.mark.anyio
async def test_refused_resume_keeps_the_policy_reason() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={
                "error": {
                    "code": "SUSPICIOUS_ACTIVITY",
                    "message": "Multiple sessions",
                    "details": {"reason": "Close your other devices"},
                }
            },
        )

    transport = make_transport(handler)

    with pytest.raises(TrackingRequestError) as exc_info:
        await transport.record_event("token-1", "play", 40.0)

    assert exc_info.value.denied_by_policy is True
    assert exc_info.value.reason == "Close your other devices"
