"""
Cancellable periodic background tasks.

Tasks never keep schedule state of their own: each tick is expected to
recompute what is due from persisted timestamps, so a restart simply resumes.
"""

import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from trustlayer.core.logging import LoggerMixin


TickCallback = Callable[[], Awaitable[None]]


class PeriodicTask(LoggerMixin):
    """Run an async callback on a fixed interval until stopped"""

    def __init__(
        self,
        name: str,
        interval: timedelta,
        callback: TickCallback,
        run_immediately: bool = True,
    ):
        if interval.total_seconds() <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.run_immediately = run_immediately
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop"""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"trustlayer:{self.name}")
        self.logger.info(f"Started periodic task '{self.name}' every {self.interval}")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish"""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        self.logger.info(f"Stopped periodic task '{self.name}'")

    async def run_once(self) -> None:
        """Execute a single tick; errors are logged and do not stop the schedule"""
        self.ticks += 1
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Periodic task '{self.name}' failed: {e}", exc_info=True)

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval.total_seconds())
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval.total_seconds())
