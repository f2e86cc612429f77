"""Background loops run alongside the API."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Calls ``func`` every ``interval_seconds`` until stopped.

    Errors are logged and the loop keeps going. An interval of 0 or less
    disables the task.
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[object]], interval_seconds: float):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.interval_seconds <= 0:
            logger.info(f"{self.name} disabled")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"{self.name} scheduled every {self.interval_seconds}s")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info(f"{self.name} stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.func()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{self.name} error: {e}")
