import asyncio
import logging
from contextlib import suppress
from typing import Callable

logger = logging.getLogger("academia.tracking.timers")


class PeriodicTask:
    """
    Calls a synchronous callback every ``interval`` seconds on the running loop.

    ``start``/``stop`` are synchronous so player handlers can toggle the
    timer without awaiting. Every exit path must call ``stop``.
    """

    def __init__(self, interval: float, callback: Callable[[], None], *, name: str = "periodic") -> None:
        if interval <= 0:
            raise ValueError("interval must be greater than 0")
        self.interval = interval
        self._callback = callback
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=self._name)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def aclose(self) -> None:
        task = self._task
        self.stop()
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._callback()
            except Exception:
                logger.error("timer_callback_failed timer=%s", self._name, exc_info=True)
