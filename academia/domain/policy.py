"""Concurrency/anomaly policy for opening viewing sessions.

The policy discourages credential sharing (one login streaming on several
devices at once). It is a heuristic evaluated when a session starts: it
trades false negatives for low friction and is not a DRM guarantee.

The caller is responsible for evaluating it atomically against the session
store (see ``use_cases.playback.start_session``).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol
import uuid

logger = logging.getLogger(__name__)

DENY_CONCURRENT_REASON = (
    "Multiple simultaneous sessions detected. Close the video on your other "
    "devices before continuing."
)
CHECK_FAILED_REASON = "We could not verify your active sessions. Please try again."


class PolicyVerdict(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    DENY = "deny"


@dataclass(frozen=True)
class PolicyDecision:
    verdict: PolicyVerdict
    message: str | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict is not PolicyVerdict.DENY

    @classmethod
    def allow(cls) -> "PolicyDecision":
        return cls(PolicyVerdict.ALLOW)

    @classmethod
    def warn(cls, message: str) -> "PolicyDecision":
        return cls(PolicyVerdict.WARN, message)

    @classmethod
    def deny(cls, reason: str) -> "PolicyDecision":
        return cls(PolicyVerdict.DENY, reason)


class ActiveSession(Protocol):
    user_id: uuid.UUID
    content_id: uuid.UUID


@dataclass(frozen=True)
class ClientFootprint:
    """Distinct networks and devices a user streamed from recently."""

    ip_addresses: frozenset[str] = frozenset()
    user_agents: frozenset[str] = frozenset()

    def including(self, ip_address: str | None, user_agent: str | None) -> "ClientFootprint":
        ips = set(self.ip_addresses)
        agents = set(self.user_agents)
        if ip_address:
            ips.add(ip_address)
        if user_agent:
            agents.add(user_agent)
        return ClientFootprint(frozenset(ips), frozenset(agents))

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str | None, str | None]]) -> "ClientFootprint":
        ips: set[str] = set()
        agents: set[str] = set()
        for ip, agent in pairs:
            if ip:
                ips.add(ip)
            if agent:
                agents.add(agent)
        return cls(frozenset(ips), frozenset(agents))


@dataclass(frozen=True)
class ConcurrencyPolicy:
    """
    Thresholds for concurrent viewing sessions of one user.

    ``max_concurrent_sessions`` active sessions already open → DENY.
    Exactly ``warn_concurrent_sessions`` active → ALLOW with a warning.
    More than ``max_distinct_ips`` networks or ``max_distinct_devices``
    user agents in the recent window → ALLOW with a warning.
    """

    max_concurrent_sessions: int = 2
    warn_concurrent_sessions: int = 1
    max_distinct_ips: int = 5
    max_distinct_devices: int = 3

    def __post_init__(self) -> None:
        if self.max_concurrent_sessions <= 0:
            raise ValueError("max_concurrent_sessions must be greater than 0")
        if not 0 <= self.warn_concurrent_sessions < self.max_concurrent_sessions:
            raise ValueError(
                "warn_concurrent_sessions must be lower than max_concurrent_sessions"
            )

    def evaluate(
        self,
        active_sessions: Sequence[ActiveSession],
        footprint: ClientFootprint | None = None,
    ) -> PolicyDecision:
        active_count = len(active_sessions)

        if active_count >= self.max_concurrent_sessions:
            return PolicyDecision.deny(DENY_CONCURRENT_REASON)

        if active_count == self.warn_concurrent_sessions and active_count > 0:
            return PolicyDecision.warn(
                f"You already have {active_count} active video session(s). "
                f"Opening more than {self.max_concurrent_sessions} at once "
                "will be blocked."
            )

        if footprint is not None:
            distinct_ips = len(footprint.ip_addresses)
            distinct_devices = len(footprint.user_agents)
            if (
                distinct_ips > self.max_distinct_ips
                or distinct_devices > self.max_distinct_devices
            ):
                return PolicyDecision.warn(
                    f"We detected access from multiple locations ({distinct_ips} IPs, "
                    f"{distinct_devices} devices). For security, this will be monitored."
                )

        return PolicyDecision.allow()
