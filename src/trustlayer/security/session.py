"""
TrustLayer Session Timeout
Tracks the last user activity in secure storage and logs the session out
once it has been idle for longer than the timeout.
"""

from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from trustlayer.core.clock import Clock, SystemClock, parse_iso, to_iso
from trustlayer.core.encryption import SecureStorage
from trustlayer.core.logging import LoggerMixin
from trustlayer.core.scheduler import PeriodicTask


LAST_ACTIVITY_KEY = "last_activity_timestamp"

TimeoutCallback = Callable[[], Awaitable[None]]


class SessionTimeoutMonitor(LoggerMixin):
    """Idle session detection driven by a once-per-interval tick"""

    def __init__(
        self,
        storage: SecureStorage,
        clock: Optional[Clock] = None,
        timeout: timedelta = timedelta(minutes=30),
        check_interval: timedelta = timedelta(minutes=1),
        on_timeout: Optional[TimeoutCallback] = None,
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self.on_timeout = on_timeout
        self._task = PeriodicTask("session-timeout", check_interval, self.check_timeout)

    async def record_activity(self) -> datetime:
        now = self.clock.now()
        await self.storage.write(LAST_ACTIVITY_KEY, to_iso(now))
        return now

    async def last_activity(self) -> Optional[datetime]:
        return parse_iso(await self.storage.read(LAST_ACTIVITY_KEY))

    async def clear(self) -> None:
        await self.storage.delete(LAST_ACTIVITY_KEY)

    async def check_timeout(self) -> bool:
        """
        Returns True when the session expired on this check. The timeout
        callback runs at most once per expiry because it is expected to clear
        the activity timestamp through the logout path.
        """
        last_activity = await self.last_activity()
        if last_activity is None:
            return False

        idle = self.clock.now() - last_activity
        if idle < self.timeout:
            return False

        self.logger.info(f"Session idle for {int(idle.total_seconds())}s, logging out")
        if self.on_timeout is not None:
            await self.on_timeout()
        else:
            await self.clear()
        return True

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
