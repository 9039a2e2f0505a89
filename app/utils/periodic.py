"""
Cancellable periodic task.

Runs an async callback on a fixed interval until asked to stop. A stop
request ends the loop after the current iteration; in-flight calls are
never cancelled.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from app.utils.logger import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """
    Usage:
        task = PeriodicTask("fill-detector", detector.run_cycle, interval_seconds=30)
        task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[object]],
        interval_seconds: float,
    ):
        self.name = name
        self.callback = callback
        self.interval_seconds = interval_seconds
        self.iterations = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the loop. Returns False if it is already running."""
        if self.running:
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"{self.name} loop started (interval={self.interval_seconds}s)")
        return True

    def request_stop(self) -> None:
        """Signal the loop to end after the current iteration."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self) -> None:
        """Signal the loop and wait for the current iteration to finish."""
        self.request_stop()
        if self._task is not None:
            try:
                await self._task
            finally:
                self._task = None
        logger.info(f"{self.name} loop stopped")

    async def _run(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await self.callback()
            except Exception as e:
                logger.error(f"{self.name} iteration failed: {str(e)}", exc_info=True)
            self.iterations += 1

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
