"""Wall clock backed by time.time() and the running event loop."""

import asyncio
import time
from collections.abc import Callable

from pandorabox.domain.ports import IClock, ITimerHandle


class _LoopTimer(ITimerHandle):
    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()


class SystemClock(IClock):
    """Production clock.

    Hey future me - call_later() needs a RUNNING loop. Everything that schedules timers (the
    realtime channel, the session refresh timer) only does so from inside coroutines, so that's
    always true in practice.
    """

    def time(self) -> float:
        """Current epoch seconds."""
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ITimerHandle:
        """Schedule ``callback`` on the running loop."""
        loop = asyncio.get_running_loop()
        return _LoopTimer(loop.call_later(delay, callback))
