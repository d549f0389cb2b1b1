"""
Periodic background tasks with explicit cancellation.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run an async callable every `interval` seconds until cancelled.

    Errors raised by the callable are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable],
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self._func = func
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.debug(f"Periodic task {self.name} started (every {self.interval}s)")

    async def _loop(self) -> None:
        if self._run_immediately:
            await self._run_once()
        while True:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            await self._run_once()

    async def _run_once(self) -> None:
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Error in periodic task {self.name}: {e}")
        finally:
            self.runs += 1

    async def cancel(self) -> None:
        """Stop the loop and wait for it to exit."""
        if not self._task:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Periodic task {self.name} cancelled")
