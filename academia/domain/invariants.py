"""
Domain invariants for watch-time accounting.

All invariants are checked BEFORE any side effects (database writes).

INVARIANTS:
1. Persisted watch time never decreases (absolute, monotonic sync)
2. Positions and watch time are non-negative
3. Playback events use a closed vocabulary
4. Explicit rejection - clear errors, no silent failures
"""

import logging
import math
from typing import Any

logger = logging.getLogger(__name__)

PLAYBACK_EVENT_KINDS = frozenset({"play", "pause", "seek", "ended", "close"})
CLOSING_EVENT_KINDS = frozenset({"ended", "close"})

# Why a session stopped being active. Closing event kinds are reasons too.
# Only sweeper closures may be resumed, and only through the concurrency policy.
END_REASON_STALE = "stale"
END_REASON_REPLACED = "replaced"
END_REASON_CLEANUP = "cleanup"
RESUMABLE_END_REASONS = frozenset({END_REASON_STALE})


class InvariantViolation(Exception):
    """
    Raised when a domain invariant is violated.

    This is a domain-level error that should be handled explicitly,
    never silently ignored.
    """

    def __init__(self, message: str, *, invariant: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.invariant = invariant
        self.details = details or {}

        logger.error(
            "invariant_violation invariant=%s message=%s details=%s",
            invariant,
            message,
            details,
        )


def validate_watch_time_bounds(watched_seconds: float) -> None:
    """Cumulative watch time must be a finite, non-negative number."""
    if not math.isfinite(watched_seconds) or watched_seconds < 0:
        raise InvariantViolation(
            f"Watched seconds {watched_seconds} must be a non-negative number",
            invariant="watch_time.bounds",
            details={"watched_seconds": watched_seconds},
        )


def validate_position_bounds(position_seconds: float) -> None:
    """Video-relative position must be a finite, non-negative number."""
    if not math.isfinite(position_seconds) or position_seconds < 0:
        raise InvariantViolation(
            f"Position {position_seconds} seconds must be non-negative",
            invariant="playback_event.position_bounds",
            details={"position_seconds": position_seconds},
        )


def validate_event_kind(kind: str) -> None:
    if kind not in PLAYBACK_EVENT_KINDS:
        raise InvariantViolation(
            f"Unknown playback event kind {kind!r}",
            invariant="playback_event.kind",
            details={"kind": kind, "allowed": sorted(PLAYBACK_EVENT_KINDS)},
        )


def is_forward_watch_time(current_seconds: float, new_seconds: float) -> bool:
    """
    Persisted watch time is monotonic: only a strictly larger total moves it.

    Sync calls carry the absolute total, so an equal or smaller value is a
    duplicate or reordered delivery and is skipped, never applied.
    """
    return new_seconds > current_seconds


def completion_percent(watched_seconds: float, duration_seconds: float | None) -> float:
    """Share of the declared duration watched, capped at 100."""
    if not duration_seconds or duration_seconds <= 0:
        return 0.0
    return min(100.0, (watched_seconds / duration_seconds) * 100.0)


def log_invariant_skip(
    invariant: str,
    reason: str,
    **kwargs: Any,
) -> None:
    """Log when an operation is skipped because of an invariant."""
    logger.info(
        "invariant_skip invariant=%s reason=%s %s",
        invariant,
        reason,
        " ".join(f"{k}={v}" for k, v in kwargs.items()),
    )
