"""Session lifecycle for one playback attempt.

    UNINITIALIZED -> STARTING -> ACTIVE | BLOCKED
    ACTIVE -> ENDING -> ENDED
    ACTIVE -> BLOCKED (a resumed session refused by the server)

BLOCKED is terminal for the attempt, ``end()`` and unload included: every
later ``play`` from the player is paused on the spot and never reaches the
accumulator or the event log.
Player handlers are synchronous and update local state before any network
call is scheduled; network calls run as tracked tasks (see ``drain``).
"""

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from enum import Enum
from typing import Any, Callable

from ..domain.invariants import CLOSING_EVENT_KINDS
from .accumulator import FLUSH_INTERVAL_SECONDS, MAX_CREDIT_PER_TICK, WatchTimeAccumulator
from .player import (
    ENDED,
    PAUSE,
    PLAY,
    SEEKED,
    UNLOAD,
    VISIBILITY_HIDDEN,
    Player,
    PlayerEvent,
    PlayerSubscription,
)
from .timers import PeriodicTask
from .transport import (
    SessionBlockedError,
    StartedSession,
    TrackingRequestError,
    TrackingTransport,
)

logger = logging.getLogger("academia.tracking.session")

HEARTBEAT_INTERVAL_SECONDS = 30.0


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    ACTIVE = "active"
    BLOCKED = "blocked"
    ENDING = "ending"
    ENDED = "ended"


class PlaybackSession:
    def __init__(
        self,
        transport: TrackingTransport,
        content_id: uuid.UUID,
        *,
        declared_duration_seconds: float | None = None,
        user_agent: str | None = None,
        on_warning: Callable[[str], None] | None = None,
        on_suspicious_activity: Callable[[str], None] | None = None,
        on_blocked_playback: Callable[[str], None] | None = None,
        heartbeat_interval: float | None = HEARTBEAT_INTERVAL_SECONDS,
        flush_interval: float | None = FLUSH_INTERVAL_SECONDS,
        max_credit_per_tick: float = MAX_CREDIT_PER_TICK,
    ) -> None:
        self._transport = transport
        self.content_id = content_id
        self.declared_duration_seconds = declared_duration_seconds
        self.user_agent = user_agent
        self._on_warning = on_warning
        self._on_suspicious_activity = on_suspicious_activity
        self._on_blocked_playback = on_blocked_playback

        self.state = SessionState.UNINITIALIZED
        self.session_id: str | None = None
        self.blocked_reason: str | None = None
        self.persisted_watched_seconds = 0.0

        self._player: Player | None = None
        self._subscription: PlayerSubscription | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._suspicious_notified = False
        self._closing_event_sent = False
        self._end_requested = False

        self.accumulator = WatchTimeAccumulator(
            on_flush=self._handle_flush,
            on_event=self._handle_accumulator_event,
            position_source=self._current_position,
            flush_interval=flush_interval,
            max_credit_per_tick=max_credit_per_tick,
        )
        self._heartbeat = (
            PeriodicTask(heartbeat_interval, self._heartbeat_tick, name="watch-time-heartbeat")
            if heartbeat_interval is not None
            else None
        )

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> StartedSession:
        """Open the server-side session.

        Raises ``SessionBlockedError`` when the concurrency policy denies it
        (the session becomes BLOCKED). Any other failure raises
        ``TrackingRequestError`` and leaves the session UNINITIALIZED.
        """
        if self.state is not SessionState.UNINITIALIZED:
            raise RuntimeError(f"Cannot start a session in state {self.state.value}")

        self.state = SessionState.STARTING
        try:
            started = await self._transport.start_session(
                self.content_id,
                declared_duration_seconds=self.declared_duration_seconds,
                user_agent=self.user_agent,
            )
        except SessionBlockedError as exc:
            self._block(exc.reason)
            raise
        except TrackingRequestError:
            self.state = SessionState.UNINITIALIZED
            raise

        self.session_id = started.session_id
        self.state = SessionState.ACTIVE
        logger.info(
            "session_started session_id=%s content_id=%s warning=%s",
            started.session_id,
            self.content_id,
            bool(started.warning),
        )
        if started.warning and self._on_warning is not None:
            self._on_warning(started.warning)

        if self._end_requested:
            await self.end()
            return started

        if self._heartbeat is not None:
            self._heartbeat.start()
        if self._player is not None and self._player.is_playing():
            self.accumulator.on_play(self._player.current_position())
        return started

    async def end(self) -> None:
        """Final close event and sync, then ENDED. Calling it again is a no-op."""
        if self.state is SessionState.STARTING:
            self._end_requested = True
            return
        if self.state in (SessionState.ENDING, SessionState.ENDED):
            return
        if self.state is not SessionState.ACTIVE:
            self._settle_inactive()
            return

        self.state = SessionState.ENDING
        position = self._current_position()
        total = self.accumulator.finish(position)
        self._stop_heartbeat()
        if not self._closing_event_sent:
            self._closing_event_sent = True
            await self._deliver_event("close", self._final_position(position), None)
        await self._deliver_sync(total)
        self._release()
        self.state = SessionState.ENDED
        logger.info(
            "session_ended session_id=%s watched_seconds=%.2f", self.session_id, total
        )

    def handle_unload(self) -> None:
        """Page is going away: end now, send the final close and sync best-effort.

        The transition to ENDED does not wait for the network; watch time
        accrued since the last successful sync may be lost.
        """
        if self.state is SessionState.ENDED:
            return
        if self.state is SessionState.STARTING:
            self._end_requested = True
            return
        if self.state not in (SessionState.ACTIVE, SessionState.ENDING):
            self._settle_inactive()
            return

        position = self._current_position()
        total = self.accumulator.finish(position)
        self._stop_heartbeat()
        if not self._closing_event_sent:
            self._closing_event_sent = True
            self._spawn(
                self._deliver_event("close", self._final_position(position), None)
            )
        self._spawn(self._deliver_sync(total))
        self._release()
        self.state = SessionState.ENDED

    async def drain(self) -> None:
        """Wait for every scheduled network call to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- network operations --------------------------------------------------

    async def sync(self, cumulative_watched_seconds: float | None = None) -> bool:
        """Send the absolute watched total. Failures are logged, never raised."""
        if self.state not in (SessionState.ACTIVE, SessionState.ENDING):
            return False
        if cumulative_watched_seconds is None:
            cumulative_watched_seconds = self.accumulator.total_watched_seconds
        return await self._deliver_sync(cumulative_watched_seconds)

    async def record_event(
        self, kind: str, video_position_seconds: float, metadata: dict[str, Any] | None = None
    ) -> bool:
        """Fire-and-forget event append. Failures are logged, never raised."""
        if self.state not in (SessionState.ACTIVE, SessionState.ENDING):
            return False
        if kind in CLOSING_EVENT_KINDS:
            self._closing_event_sent = True
        return await self._deliver_event(kind, video_position_seconds, metadata)

    async def _deliver_sync(self, total: float) -> bool:
        if self.session_id is None:
            return False
        try:
            await self._transport.sync_watch_time(self.session_id, total)
        except TrackingRequestError as exc:
            # The in-memory total is kept; the next tick sends it again
            logger.warning(
                "sync_failed session_id=%s watched_seconds=%.2f error=%s",
                self.session_id,
                total,
                exc,
            )
            self._check_revoked(exc)
            return False
        self.persisted_watched_seconds = max(self.persisted_watched_seconds, total)
        return True

    async def _deliver_event(
        self, kind: str, position: float, metadata: dict[str, Any] | None
    ) -> bool:
        if self.session_id is None:
            return False
        try:
            await self._transport.record_event(self.session_id, kind, max(0.0, position), metadata)
        except TrackingRequestError as exc:
            logger.warning(
                "record_event_failed session_id=%s kind=%s error=%s",
                self.session_id,
                kind,
                exc,
            )
            self._check_revoked(exc)
            return False
        return True

    # -- player wiring -------------------------------------------------------

    def attach(self, player: Player) -> PlayerSubscription:
        if self._subscription is not None and not self._subscription.closed:
            raise RuntimeError("A player is already attached to this session")
        self._player = player
        unsubscribe = player.subscribe(self._handle_player_event)
        self._subscription = PlayerSubscription(unsubscribe, on_close=self._detach)
        return self._subscription

    def _detach(self) -> None:
        self._player = None
        self._subscription = None

    def _handle_player_event(self, event: PlayerEvent) -> None:
        if event.kind == UNLOAD:
            self.handle_unload()
            return

        if self.state is SessionState.BLOCKED:
            if event.kind == PLAY:
                self._intercept_blocked_play()
            return

        if self.state is not SessionState.ACTIVE:
            return

        accumulator = self.accumulator
        if event.kind == PLAY:
            accumulator.on_play(event.position)
        elif event.kind == PAUSE:
            accumulator.on_pause(event.position)
        elif event.kind == SEEKED:
            previous = (
                event.previous_position
                if event.previous_position is not None
                else accumulator.last_known_position
            )
            accumulator.on_seek(previous, event.position)
        elif event.kind == ENDED:
            accumulator.on_ended(event.position)
            self._spawn(self.end())
        elif event.kind == VISIBILITY_HIDDEN:
            if accumulator.is_playing:
                accumulator.on_pause(event.position, {"reason": "tab_hidden"})

    def _intercept_blocked_play(self) -> None:
        if self._player is not None:
            self._player.pause()
        reason = self.blocked_reason or ""
        logger.info("blocked_play_intercepted content_id=%s", self.content_id)
        if self._on_blocked_playback is not None:
            self._on_blocked_playback(reason)

    def _handle_flush(self, total: float) -> None:
        if self.state is SessionState.ACTIVE:
            self._spawn(self._deliver_sync(total))

    def _handle_accumulator_event(
        self, kind: str, position: float, metadata: dict[str, Any] | None
    ) -> None:
        if self.state is not SessionState.ACTIVE:
            return
        if kind in CLOSING_EVENT_KINDS:
            self._closing_event_sent = True
        self._spawn(self._deliver_event(kind, position, metadata))

    def _heartbeat_tick(self) -> None:
        if self.state is SessionState.ACTIVE and self.accumulator.is_playing:
            self._spawn(self._deliver_sync(self.accumulator.total_watched_seconds))

    # -- helpers -------------------------------------------------------------

    def _block(self, reason: str) -> None:
        self.state = SessionState.BLOCKED
        self.blocked_reason = reason
        logger.warning("session_blocked content_id=%s reason=%s", self.content_id, reason)
        if self._player is not None:
            self._player.pause()
        if not self._suspicious_notified:
            self._suspicious_notified = True
            if self._on_suspicious_activity is not None:
                self._on_suspicious_activity(reason)

    def _check_revoked(self, exc: TrackingRequestError) -> None:
        # The server refused to count a resumed session again: stop playback
        if exc.denied_by_policy and self.state is SessionState.ACTIVE:
            self._block(exc.reason or "")
            self._release()

    def _settle_inactive(self) -> None:
        self._release()
        # BLOCKED stays terminal so an attached player keeps being paused
        if self.state is not SessionState.BLOCKED:
            self.state = SessionState.ENDED

    def _current_position(self) -> float | None:
        if self._player is None:
            return None
        return self._player.current_position()

    def _final_position(self, position: float | None) -> float:
        if position is not None:
            return position
        return self.accumulator.last_known_position

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.stop()

    def _release(self) -> None:
        self.accumulator.finish()
        self._stop_heartbeat()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
