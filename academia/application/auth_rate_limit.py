"""Login attempt limiter.

Counters are keyed by identifier and live in an explicit limiter object
owned by the application (``app.state.login_limiter``), not in module
state. The in-memory backend is scoped to one process; deployments with
several API instances use the Redis backend so every instance sees the
same counters.
"""

import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Protocol

from redis import RedisError
from redis.asyncio import Redis as AsyncRedis

from ..config import Settings
from ..infra.redis import get_async_redis_client

logger = logging.getLogger("academia.auth.rate_limit")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_COOLDOWN_SECONDS = 300.0
DEFAULT_MIN_INTERVAL_SECONDS = 2.0
RATE_LIMIT_MESSAGE = "Too many attempts, try again later"
TOO_FAST_MESSAGE = "Please wait a moment before trying again"
IDENTIFIER_HASH_LENGTH = 64


@dataclass(frozen=True)
class AttemptCheck:
    allowed: bool
    wait_seconds: float = 0.0
    message: str | None = None

    @classmethod
    def ok(cls) -> "AttemptCheck":
        return cls(True)


class LoginLimiter(Protocol):
    async def check(self, key: str) -> AttemptCheck:
        ...

    async def record_failure(self, key: str) -> None:
        ...

    async def reset(self, key: str) -> None:
        ...

    async def remaining(self, key: str) -> int:
        ...


def make_login_key(identifier: str) -> str:
    if not identifier or not identifier.strip():
        raise ValueError("identifier is required for rate limiting")
    normalized = identifier.strip().lower()
    digest = hashlib.sha256(normalized.encode()).hexdigest()
    return f"login:{digest[:IDENTIFIER_HASH_LENGTH]}"


@dataclass
class _AttemptState:
    failures: int
    last_failure_at: float


def _evaluate(
    failures: int,
    last_failure_at: float,
    now: float,
    *,
    max_attempts: int,
    cooldown_seconds: float,
    min_interval_seconds: float,
) -> AttemptCheck:
    elapsed = now - last_failure_at
    if failures >= max_attempts:
        return AttemptCheck(False, round(cooldown_seconds - elapsed, 3), RATE_LIMIT_MESSAGE)
    if elapsed < min_interval_seconds:
        return AttemptCheck(False, round(min_interval_seconds - elapsed, 3), TOO_FAST_MESSAGE)
    return AttemptCheck.ok()


class LoginAttemptLimiter:
    """
    In-memory login attempt limiter.

    ``max_attempts`` failures lock the key for ``cooldown_seconds`` counted
    from the last failure. Consecutive attempts must be at least
    ``min_interval_seconds`` apart. A success or an expired cooldown resets
    the key. Entries are kept in last-failure order and expired ones are
    dropped on every call, so keys that never come back do not pile up.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be greater than 0")
        self.max_attempts = max_attempts
        self.cooldown_seconds = cooldown_seconds
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._attempts: OrderedDict[str, _AttemptState] = OrderedDict()

    @property
    def tracked_keys(self) -> int:
        return len(self._attempts)

    def _prune(self, now: float) -> None:
        while self._attempts:
            oldest = next(iter(self._attempts.values()))
            if now - oldest.last_failure_at < self.cooldown_seconds:
                break
            self._attempts.popitem(last=False)

    def _current(self, key: str, now: float) -> _AttemptState | None:
        self._prune(now)
        return self._attempts.get(key)

    async def check(self, key: str) -> AttemptCheck:
        now = self._clock()
        state = self._current(key, now)
        if state is None:
            return AttemptCheck.ok()
        return _evaluate(
            state.failures,
            state.last_failure_at,
            now,
            max_attempts=self.max_attempts,
            cooldown_seconds=self.cooldown_seconds,
            min_interval_seconds=self.min_interval_seconds,
        )

    async def record_failure(self, key: str) -> None:
        now = self._clock()
        state = self._current(key, now)
        if state is None:
            self._attempts[key] = _AttemptState(failures=1, last_failure_at=now)
            return
        state.failures += 1
        state.last_failure_at = now
        self._attempts.move_to_end(key)

    async def reset(self, key: str) -> None:
        self._attempts.pop(key, None)

    async def remaining(self, key: str) -> int:
        state = self._current(key, self._clock())
        failures = state.failures if state else 0
        return max(0, self.max_attempts - failures)

    def clear(self) -> None:
        self._attempts.clear()


class RedisLoginAttemptLimiter:
    """Same rules as :class:`LoginAttemptLimiter`, counters shared through Redis.

    Each key is a hash ``{failures, last_failure_at}`` that expires with the
    cooldown, so an expired cooldown resets the key on its own.
    """

    def __init__(
        self,
        redis_client: AsyncRedis,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
        prefix: str = "rate",
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be greater than 0")
        self._redis = redis_client
        self.max_attempts = max_attempts
        self.cooldown_seconds = cooldown_seconds
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def _load(self, key: str) -> tuple[int, float] | None:
        raw = await self._redis.hgetall(self._key(key))
        if not raw:
            return None
        return int(raw.get("failures", 0)), float(raw.get("last_failure_at", 0.0))

    async def check(self, key: str) -> AttemptCheck:
        try:
            state = await self._load(key)
        except RedisError as exc:
            # Login must not depend on Redis being up
            logger.error(
                "Redis operation failed operation=HGETALL key=%s error=%s", key, exc
            )
            return AttemptCheck.ok()
        if state is None:
            return AttemptCheck.ok()
        failures, last_failure_at = state
        now = self._clock()
        if now - last_failure_at >= self.cooldown_seconds:
            await self.reset(key)
            return AttemptCheck.ok()
        return _evaluate(
            failures,
            last_failure_at,
            now,
            max_attempts=self.max_attempts,
            cooldown_seconds=self.cooldown_seconds,
            min_interval_seconds=self.min_interval_seconds,
        )

    async def record_failure(self, key: str) -> None:
        redis_key = self._key(key)
        try:
            await self._redis.hincrby(redis_key, "failures", 1)
            await self._redis.hset(redis_key, "last_failure_at", str(self._clock()))
            await self._redis.expire(redis_key, max(1, int(self.cooldown_seconds)))
        except RedisError as exc:
            logger.error(
                "Redis operation failed operation=HINCRBY key=%s error=%s", key, exc
            )

    async def reset(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except RedisError as exc:
            logger.error("Redis operation failed operation=DEL key=%s error=%s", key, exc)

    async def remaining(self, key: str) -> int:
        try:
            state = await self._load(key)
        except RedisError as exc:
            logger.error(
                "Redis operation failed operation=HGETALL key=%s error=%s", key, exc
            )
            return self.max_attempts
        failures = state[0] if state else 0
        return max(0, self.max_attempts - failures)


def build_login_limiter(
    config: Settings,
    redis_client_factory: Callable[[], AsyncRedis] | None = None,
) -> LoginLimiter:
    if config.login_limiter_backend == "redis":
        if redis_client_factory is None:
            redis_client_factory = get_async_redis_client
        return RedisLoginAttemptLimiter(
            redis_client_factory(),
            max_attempts=config.login_max_attempts,
            cooldown_seconds=config.login_cooldown_seconds,
            min_interval_seconds=config.login_min_interval_seconds,
        )
    return LoginAttemptLimiter(
        max_attempts=config.login_max_attempts,
        cooldown_seconds=config.login_cooldown_seconds,
        min_interval_seconds=config.login_min_interval_seconds,
    )
