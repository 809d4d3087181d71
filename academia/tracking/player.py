"""Player integration contract.

Any player (native media element bridge or third-party embed) that can
report these signals can be tracked: play, pause, seeked (previous and new
position), ended, tab visibility changes and page unload.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

logger = logging.getLogger("academia.tracking.player")

PLAY = "play"
PAUSE = "pause"
SEEKED = "seeked"
ENDED = "ended"
VISIBILITY_HIDDEN = "visibility_hidden"
VISIBILITY_VISIBLE = "visibility_visible"
UNLOAD = "unload"

PLAYER_EVENT_KINDS = frozenset(
    {PLAY, PAUSE, SEEKED, ENDED, VISIBILITY_HIDDEN, VISIBILITY_VISIBLE, UNLOAD}
)


@dataclass(frozen=True)
class PlayerEvent:
    kind: str
    position: float = 0.0
    # Only set for SEEKED
    previous_position: float | None = None

    def __post_init__(self) -> None:
        if self.kind not in PLAYER_EVENT_KINDS:
            raise ValueError(f"Unknown player event kind {self.kind!r}")


PlayerListener = Callable[[PlayerEvent], None]


class Player(Protocol):
    def subscribe(self, listener: PlayerListener) -> Callable[[], None]:
        """Register a listener; the returned callable unregisters it."""
        ...

    def pause(self) -> None:
        ...

    def current_position(self) -> float:
        ...

    def is_playing(self) -> bool:
        ...


class PlayerSubscription:
    """Handle returned by attaching to a player. ``close`` must run on every unmount path."""

    def __init__(self, unsubscribe: Callable[[], None], on_close: Callable[[], None] | None = None) -> None:
        self._unsubscribe = unsubscribe
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._unsubscribe()
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> "PlayerSubscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class PlayerEventHub:
    """Fan-out helper for player bridges: keeps listeners and emits events to them."""

    def __init__(self) -> None:
        self._listeners: list[PlayerListener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: PlayerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: PlayerEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.error("player_listener_failed kind=%s", event.kind, exc_info=True)
