"""Watch-time accumulator.

Turns play/pause/seek/ended notifications into seconds actually watched.
Time is credited only between consecutive known positions while playing,
and one credit is capped at ``max_credit_per_tick``: a forward jump
(seek, resumed background tab, clock skew) or a rewind earns nothing, but
the position pointer still moves.
"""

import logging
from typing import Any, Callable

from .timers import PeriodicTask

logger = logging.getLogger("academia.tracking.accumulator")

MAX_CREDIT_PER_TICK = 10.0
FLUSH_INTERVAL_SECONDS = 3.0

FlushCallback = Callable[[float], None]
EventCallback = Callable[[str, float, dict[str, Any] | None], None]


class WatchTimeAccumulator:
    def __init__(
        self,
        *,
        on_flush: FlushCallback | None = None,
        on_event: EventCallback | None = None,
        position_source: Callable[[], float | None] | None = None,
        flush_interval: float | None = FLUSH_INTERVAL_SECONDS,
        max_credit_per_tick: float = MAX_CREDIT_PER_TICK,
    ) -> None:
        if max_credit_per_tick <= 0:
            raise ValueError("max_credit_per_tick must be greater than 0")
        self._on_flush = on_flush
        self._on_event = on_event
        self._position_source = position_source
        self.max_credit_per_tick = max_credit_per_tick
        self._timer = (
            PeriodicTask(flush_interval, self.tick, name="watch-time-flush")
            if flush_interval is not None
            else None
        )
        self.is_playing = False
        self.play_start_position = 0.0
        self.last_known_position = 0.0
        self.total_watched_seconds = 0.0
        self.ended = False

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and self._timer.running

    def _emit(self, kind: str, position: float, metadata: dict[str, Any] | None = None) -> None:
        if self._on_event is not None:
            self._on_event(kind, position, metadata)

    def _flush(self) -> None:
        if self._on_flush is not None:
            self._on_flush(self.total_watched_seconds)

    def _stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.stop()

    def commit(self, position: float) -> float:
        """Credit the span since the last pointer if it is plausible; move the pointer."""
        delta = position - self.play_start_position
        credited = delta if 0 < delta <= self.max_credit_per_tick else 0.0
        if credited == 0.0 and delta != 0:
            logger.debug(
                "delta_discarded from=%.2f to=%.2f delta=%.2f",
                self.play_start_position,
                position,
                delta,
            )
        self.total_watched_seconds += credited
        self.play_start_position = position
        self.last_known_position = position
        return credited

    def on_play(self, position: float) -> None:
        self.last_known_position = position
        if self.is_playing:
            return
        self.is_playing = True
        self.ended = False
        self.play_start_position = position
        self._emit("play", position)
        if self._timer is not None:
            self._timer.start()

    def on_pause(self, position: float, metadata: dict[str, Any] | None = None) -> None:
        if not self.is_playing:
            self.last_known_position = position
            return
        self.commit(position)
        self.is_playing = False
        self._stop_timer()
        self._emit("pause", position, metadata)
        self._flush()

    def on_seek(self, previous_position: float, new_position: float) -> None:
        if self.is_playing:
            self.commit(previous_position)
            self.play_start_position = new_position
        self.last_known_position = new_position
        self._emit(
            "seek",
            new_position,
            {"previous_position": previous_position, "new_position": new_position},
        )

    def on_ended(self, position: float) -> None:
        if self.is_playing:
            self.commit(position)
        self.is_playing = False
        self.ended = True
        self.last_known_position = position
        self._stop_timer()
        self._emit("ended", position)
        self._flush()

    def tick(self) -> None:
        """Periodic flush: credit progress up to the current position and push the total."""
        if not self.is_playing:
            return
        position = self._position_source() if self._position_source is not None else None
        if position is not None:
            self.commit(position)
        self._flush()

    def finish(self, position: float | None = None) -> float:
        """Stop accumulating (session end/unload) and return the final total. Emits nothing."""
        if self.is_playing and position is not None:
            self.commit(position)
        self.is_playing = False
        self._stop_timer()
        return self.total_watched_seconds

    def reset(self) -> None:
        self._stop_timer()
        self.is_playing = False
        self.ended = False
        self.play_start_position = 0.0
        self.last_known_position = 0.0
        self.total_watched_seconds = 0.0
