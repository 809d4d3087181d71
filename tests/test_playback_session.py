import asyncio
import uuid

import httpx
import pytest

from academia.tracking.session import PlaybackSession, SessionState
from academia.tracking.transport import (
    HttpTrackingTransport,
    SessionBlockedError,
    TrackingRequestError,
)
from tests.tracking_helpers import FakePlayer, FakeTransport

CONTENT_ID = uuid.uuid4()
CONCURRENT_REASON = "Se detectaron varias sesiones activas"


def make_session(transport, **kwargs) -> PlaybackSession:
    kwargs.setdefault("heartbeat_interval", None)
    kwargs.setdefault("flush_interval", None)
    return PlaybackSession(transport, CONTENT_ID, declared_duration_seconds=600.0, **kwargs)


@pytest.mark.anyio
async def test_start_moves_to_active_and_tracks_playback() -> None:
    transport = FakeTransport()
    player = FakePlayer()
    session = make_session(transport)
    session.attach(player)

    started = await session.start()
    assert started.session_id == "session-token"
    assert session.state is SessionState.ACTIVE

    player.play()
    player.advance(3)
    session.accumulator.tick()
    player.advance(3)
    player.user_pause()
    await session.drain()

    assert transport.event_kinds == ["play", "pause"]
    assert transport.syncs == [pytest.approx(3.0), pytest.approx(6.0)]
    assert session.persisted_watched_seconds == pytest.approx(6.0)


@pytest.mark.anyio
async def test_start_picks_up_a_player_that_is_already_playing() -> None:
    transport = FakeTransport()
    player = FakePlayer()
    player.playing = True
    session = make_session(transport)
    session.attach(player)

    await session.start()
    await session.drain()

    assert session.accumulator.is_playing is True
    assert transport.event_kinds == ["play"]


@pytest.mark.anyio
async def test_start_twice_is_rejected() -> None:
    session = make_session(FakeTransport())
    await session.start()

    with pytest.raises(RuntimeError):
        await session.start()


@pytest.mark.anyio
async def test_warning_is_surfaced_without_blocking() -> None:
    warnings: list[str] = []
    transport = FakeTransport(warning="Actividad desde varias IPs")
    session = make_session(transport, on_warning=warnings.append)

    await session.start()

    assert session.state is SessionState.ACTIVE
    assert warnings == ["Actividad desde varias IPs"]


@pytest.mark.anyio
async def test_blocked_session_pauses_every_play_attempt() -> None:
    suspicious: list[str] = []
    blocked: list[str] = []
    transport = FakeTransport(blocked_reason=CONCURRENT_REASON)
    player = FakePlayer()
    session = make_session(
        transport,
        on_suspicious_activity=suspicious.append,
        on_blocked_playback=blocked.append,
    )
    session.attach(player)

    with pytest.raises(SessionBlockedError):
        await session.start()

    assert session.state is SessionState.BLOCKED
    assert session.blocked_reason == CONCURRENT_REASON

    player.play()
    player.play()
    await session.drain()

    assert player.playing is False
    assert blocked == [CONCURRENT_REASON, CONCURRENT_REASON]
    assert suspicious == [CONCURRENT_REASON]
    assert transport.events == []
    assert transport.syncs == []
    assert session.accumulator.total_watched_seconds == 0.0


@pytest.mark.anyio
async def test_start_failure_reverts_to_uninitialized() -> None:
    transport = FakeTransport(start_error=TrackingRequestError("boom", status_code=503))
    session = make_session(transport)

    with pytest.raises(TrackingRequestError):
        await session.start()
    assert session.state is SessionState.UNINITIALIZED

    transport.start_error = None
    await session.start()
    assert session.state is SessionState.ACTIVE


@pytest.mark.anyio
async def test_end_sends_close_and_final_sync_once() -> None:
    transport = FakeTransport()
    player = FakePlayer()
    session = make_session(transport)
    session.attach(player)
    await session.start()

    player.play()
    await session.drain()
    player.advance(4)
    await session.end()
    await session.end()
    await session.drain()

    assert session.state is SessionState.ENDED
    assert transport.event_kinds == ["play", "close"]
    assert transport.events[-1][1] == pytest.approx(4.0)
    assert transport.syncs == [pytest.approx(4.0)]


@pytest.mark.anyio
async def test_player_ended_closes_session_without_extra_close_event() -> None:
    transport = FakeTransport()
    player = FakePlayer()
    player.position = 595.0
    session = make_session(transport)
    session.attach(player)
    await session.start()

    player.play()
    player.advance(5)
    player.finish()
    await session.drain()

    assert session.state is SessionState.ENDED
    assert transport.event_kinds == ["play", "ended"]
    assert transport.syncs[-1] == pytest.approx(5.0)


@pytest.mark.anyio
async def test_failed_sync_keeps_total_for_the_next_attempt() -> None:
    transport = FakeTransport()
    transport.fail_syncs = True
    player = FakePlayer()
    session = make_session(transport)
    session.attach(player)
    await session.start()

    player.play()
    player.advance(3)
    session.accumulator.tick()
    await session.drain()

    assert session.persisted_watched_seconds == 0.0
    assert session.accumulator.total_watched_seconds == pytest.approx(3.0)

    transport.fail_syncs = False
    player.advance(3)
    session.accumulator.tick()
    await session.drain()

    assert transport.syncs == [pytest.approx(6.0)]
    assert session.persisted_watched_seconds == pytest.approx(6.0)


@pytest.mark.anyio
async def test_unload_ends_immediately_and_flushes_best_effort() -> None:
    transport = FakeTransport()
    player = FakePlayer()
    session = make_session(transport)
    session.attach(player)
    await session.start()

    player.play()
    await session.drain()
    player.advance(2)
    player.unload()

    assert session.state is SessionState.ENDED
    await session.drain()
    assert transport.event_kinds == ["play", "close"]
    assert transport.syncs == [pytest.approx(2.0)]


@pytest.mark.anyio
async def test_hidden_tab_pauses_with_reason() -> None:
    transport = FakeTransport()
    player = FakePlayer()
    session = make_session(transport)
    session.attach(player)
    await session.start()

    player.play()
    player.advance(2)
    player.hide_tab()
    await session.drain()

    assert session.accumulator.is_playing is False
    assert transport.events[-1] == ("pause", 2.0, {"reason": "tab_hidden"})


@pytest.mark.anyio
async def test_seek_is_logged_and_jump_not_credited() -> None:
    transport = FakeTransport()
    player = FakePlayer()
    session = make_session(transport)
    session.attach(player)
    await session.start()

    player.play()
    player.advance(5)
    player.seek(300.0)
    player.advance(4)
    player.user_pause()
    await session.drain()

    assert transport.event_kinds == ["play", "seek", "pause"]
    assert session.accumulator.total_watched_seconds == pytest.approx(9.0)


@pytest.mark.anyio
async def test_heartbeat_syncs_while_playing_and_stops_on_end() -> None:
    transport = FakeTransport()
    player = FakePlayer()
    session = make_session(transport, heartbeat_interval=0.01)
    session.attach(player)
    await session.start()

    player.play()
    await asyncio.sleep(0.05)
    await session.drain()
    assert transport.syncs

    await session.end()
    await session.drain()
    sent = len(transport.syncs)
    await asyncio.sleep(0.03)
    assert len(transport.syncs) == sent


@pytest.mark.anyio
async def test_end_requested_while_starting_runs_after_start() -> None:
    gate = asyncio.Event()

    class SlowTransport(FakeTransport):
        async def start_session(self, content_id, declared_duration_seconds=None, user_agent=None):
            await gate.wait()
            return await super().start_session(content_id)

    transport = SlowTransport()
    session = make_session(transport)

    start_task = asyncio.create_task(session.start())
    await asyncio.sleep(0)
    assert session.state is SessionState.STARTING

    await session.end()
    gate.set()
    await start_task

    assert session.state is SessionState.ENDED
    assert transport.event_kinds == ["close"]
    assert transport.syncs == [0.0]


@pytest.mark.anyio
async def test_record_event_is_ignored_before_start() -> None:
    transport = FakeTransport()
    session = make_session(transport)

    assert await session.record_event("play", 0.0) is False
    assert transport.events == []


def test_closing_subscription_detaches_player() -> None:
    player = FakePlayer()
    session = make_session(FakeTransport())

    with session.attach(player):
        assert player.hub.listener_count == 1

    assert player.hub.listener_count == 0
    # A detached session can be attached again
    session.attach(player).close()


def policy_denial(reason: str = CONCURRENT_REASON) -> TrackingRequestError:
    return TrackingRequestError(
        "/video/track-event failed: Multiple simultaneous sessions detected",
        status_code=429,
        code="SUSPICIOUS_ACTIVITY",
        reason=reason,
    )


@pytest.mark.anyio
async def test_end_survives_rate_limited_sync() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/video/start-session":
            return httpx.Response(200, json={"session": {"session_id": "token-1"}})
        if request.url.path == "/video/update-time":
            return httpx.Response(
                429, json={"error": {"code": "RATE_LIMITED", "message": "slow down"}}
            )
        return httpx.Response(200, json={"session": {}})

    transport = HttpTrackingTransport(
        "http://api.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_backoff_seconds=0,
    )
    session = make_session(transport)
    await session.start()

    await session.end()

    assert session.state is SessionState.ENDED
    assert session.persisted_watched_seconds == 0.0


@pytest.mark.anyio
async def test_refused_resume_blocks_the_session() -> None:
    suspicious: list[str] = []
    blocked: list[str] = []
    transport = FakeTransport()
    player = FakePlayer()
    session = make_session(
        transport,
        on_suspicious_activity=suspicious.append,
        on_blocked_playback=blocked.append,
    )
    session.attach(player)
    await session.start()

    transport.event_error = policy_denial()
    player.play()
    await session.drain()

    assert session.state is SessionState.BLOCKED
    assert session.blocked_reason == CONCURRENT_REASON
    assert player.playing is False
    assert suspicious == [CONCURRENT_REASON]

    transport.event_error = None
    player.play()
    await session.drain()

    assert player.playing is False
    assert blocked == [CONCURRENT_REASON]
    assert transport.events == []


@pytest.mark.anyio
async def test_policy_denial_while_ending_still_ends() -> None:
    transport = FakeTransport()
    session = make_session(transport)
    await session.start()
    transport.sync_error = policy_denial()

    await session.end()

    assert session.state is SessionState.ENDED
    assert transport.event_kinds == ["close"]


@pytest.mark.anyio
async def test_blocked_session_stays_blocked_after_end_and_unload() -> None:
    transport = FakeTransport(blocked_reason=CONCURRENT_REASON)
    player = FakePlayer()
    session = make_session(transport)
    session.attach(player)
    with pytest.raises(SessionBlockedError):
        await session.start()

    await session.end()
    player.unload()

    assert session.state is SessionState.BLOCKED
    player.play()
    await session.drain()
    assert player.playing is False
    assert transport.events == []
