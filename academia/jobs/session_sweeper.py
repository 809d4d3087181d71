import asyncio
import logging
import uuid
from contextlib import suppress

from redis import RedisError
from redis.asyncio import Redis as AsyncRedis
from sqlalchemy.exc import SQLAlchemyError

from ..domain.ports.viewing_session import ViewingSessionRepositoryFactory
from ..infra.redis import DistributedLock, get_async_redis_client
from ..use_cases.playback.cleanup_sessions import close_stale_sessions

logger = logging.getLogger("academia.jobs.session_sweeper")

SWEEPER_LOCK_KEY = "video_sessions:stale_sweeper"
SWEEPER_LOCK_TTL = 60


class StaleSessionSweeper:
    """
    Closes viewing sessions whose heartbeat stopped (tab killed, device off).

    Every API process runs one; only the holder of the Redis lock sweeps, so
    a deployment sweeps once per interval. Instances that lose the race keep
    trying to take the lock over on each tick.
    """

    def __init__(
        self,
        repo_factory: ViewingSessionRepositoryFactory,
        *,
        stale_after_seconds: float,
        interval_seconds: float,
        redis_client: AsyncRedis | None = None,
        lock_ttl_seconds: int = SWEEPER_LOCK_TTL,
    ) -> None:
        self._repo_factory = repo_factory
        self._stale_after_seconds = stale_after_seconds
        self._interval_seconds = interval_seconds
        self._redis = redis_client
        self._lock_ttl = lock_ttl_seconds
        self._lock: DistributedLock | None = None
        self._task: asyncio.Task[None] | None = None
        self._lock_extend_task: asyncio.Task[None] | None = None
        self._should_stop = False
        self._worker_id = str(uuid.uuid4())[:8]

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _ensure_lock(self) -> DistributedLock:
        if self._lock is None:
            if self._redis is None:
                self._redis = get_async_redis_client()
            self._lock = DistributedLock(
                self._redis,
                SWEEPER_LOCK_KEY,
                ttl_seconds=self._lock_ttl,
                owner=self._worker_id,
            )
        return self._lock

    async def _try_acquire(self) -> bool:
        try:
            lock = await self._ensure_lock()
        except (RedisError, ValueError) as exc:
            logger.error(
                "[SWEEPER] lock_unavailable lock_key=%s worker_id=%s error=%s",
                SWEEPER_LOCK_KEY,
                self._worker_id,
                exc,
            )
            return False
        if lock.acquired:
            return True
        if await lock.acquire():
            logger.info(
                "[SWEEPER] lock_acquired lock_key=%s worker_id=%s ttl=%ds",
                SWEEPER_LOCK_KEY,
                self._worker_id,
                self._lock_ttl,
            )
            return True
        return False

    async def start(self) -> None:
        if self.running:
            return
        self._should_stop = False
        self._task = asyncio.create_task(self._loop())
        self._lock_extend_task = asyncio.create_task(self._extend_lock_loop())
        logger.info(
            "[SWEEPER] started interval=%ss stale_after=%ss worker_id=%s",
            self._interval_seconds,
            self._stale_after_seconds,
            self._worker_id,
        )

    async def stop(self) -> None:
        self._should_stop = True

        for task in (self._lock_extend_task, self._task):
            if task is None:
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._lock_extend_task = None
        self._task = None

        if self._lock is not None and self._lock.acquired:
            await self._lock.release()
            logger.info(
                "[SWEEPER] stopped lock_key=%s reason=graceful worker_id=%s",
                SWEEPER_LOCK_KEY,
                self._worker_id,
            )
        self._lock = None

    async def run_once(self) -> int:
        """Close stale sessions now. Returns how many were closed."""
        try:
            return await close_stale_sessions(
                self._repo_factory, stale_after_seconds=self._stale_after_seconds
            )
        except SQLAlchemyError as exc:
            logger.error(
                "[SWEEPER] sweep_failed worker_id=%s error=%s", self._worker_id, exc
            )
            return 0

    async def _loop(self) -> None:
        while not self._should_stop:
            if await self._try_acquire():
                await self.run_once()
            await asyncio.sleep(self._interval_seconds)

    async def _extend_lock_loop(self) -> None:
        while not self._should_stop:
            await asyncio.sleep(self._lock_ttl / 2)
            lock = self._lock
            if lock is None or not lock.acquired:
                continue
            if not await lock.extend():
                logger.error(
                    "[SWEEPER] ttl_extend_failed lock_key=%s reason=lock_lost worker_id=%s",
                    SWEEPER_LOCK_KEY,
                    self._worker_id,
                )
