import logging
import uuid

from redis import RedisError
from redis.asyncio import Redis as AsyncRedis

from ..config import settings

logger = logging.getLogger("academia.redis")

# Delete or extend only while the lock still holds this owner's token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""
EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
"""


def get_async_redis_client() -> AsyncRedis:
    """Create an async Redis client from REDIS_URL."""
    redis_url = settings.redis_url
    if not redis_url:
        raise ValueError("REDIS_URL environment variable must be set")
    return AsyncRedis.from_url(redis_url, decode_responses=True)


class DistributedLock:
    """
    Distributed lock using Redis SET NX EX.
    Ensures only one instance across multiple workers can hold the lock.
    """

    def __init__(
        self,
        redis_client: AsyncRedis,
        lock_key: str,
        ttl_seconds: int = 30,
        owner: str | None = None,
    ):
        """
        Args:
            redis_client: Async Redis client
            lock_key: Unique key for this lock
            ttl_seconds: Lock TTL (auto-release on crash)
            owner: Token stored as the lock value (random when omitted)
        """
        self._redis = redis_client
        self._lock_key = f"lock:{lock_key}"
        self._ttl = ttl_seconds
        self._owner = owner or uuid.uuid4().hex
        self._acquired = False

    @property
    def key(self) -> str:
        return self._lock_key

    @property
    def acquired(self) -> bool:
        return self._acquired

    async def acquire(self) -> bool:
        try:
            result = await self._redis.set(self._lock_key, self._owner, nx=True, ex=self._ttl)
            self._acquired = bool(result)
            if self._acquired:
                logger.debug("Acquired lock: %s (TTL=%ds)", self._lock_key, self._ttl)
            return self._acquired
        except RedisError as exc:
            logger.error(
                "Redis operation failed operation=SET key=%s error=%s",
                self._lock_key,
                exc,
            )
            return False

    async def release(self) -> bool:
        if not self._acquired:
            return False
        try:
            deleted = await self._redis.eval(RELEASE_SCRIPT, 1, self._lock_key, self._owner)
            self._acquired = False
            if deleted:
                logger.debug("Released lock: %s", self._lock_key)
            return bool(deleted)
        except RedisError as exc:
            logger.error(
                "Redis operation failed operation=EVAL(DEL) key=%s error=%s",
                self._lock_key,
                exc,
            )
            return False

    async def extend(self) -> bool:
        """Reset the TTL; False means the lock was lost."""
        if not self._acquired:
            return False
        try:
            result = await self._redis.eval(
                EXTEND_SCRIPT, 1, self._lock_key, self._owner, self._ttl
            )
            if result:
                logger.debug("Extended lock: %s (TTL=%ds)", self._lock_key, self._ttl)
            else:
                self._acquired = False
            return bool(result)
        except RedisError as exc:
            logger.error(
                "Redis operation failed operation=EVAL(EXPIRE) key=%s error=%s",
                self._lock_key,
                exc,
            )
            return False
