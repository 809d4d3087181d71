from .accumulator import MAX_CREDIT_PER_TICK, WatchTimeAccumulator
from .player import Player, PlayerEvent, PlayerEventHub, PlayerSubscription
from .session import PlaybackSession, SessionState
from .transport import (
    HttpTrackingTransport,
    SessionBlockedError,
    StartedSession,
    TrackingRequestError,
    TrackingTransport,
)

__all__ = [
    "MAX_CREDIT_PER_TICK",
    "WatchTimeAccumulator",
    "Player",
    "PlayerEvent",
    "PlayerEventHub",
    "PlayerSubscription",
    "PlaybackSession",
    "SessionState",
    "HttpTrackingTransport",
    "SessionBlockedError",
    "StartedSession",
    "TrackingRequestError",
    "TrackingTransport",
]
