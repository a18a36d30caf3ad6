"""In-flight request coalescing.

Hey future me - this is the generalized version of the old "store the init promise on the
instance" trick. Two components mounting at the same time both call session.init(); without this
they'd race two verify/refresh sequences against the token store. With it, the first caller starts
ONE task and everybody who shows up while it's running awaits that same task.

Used by:
- SessionStateMachine.init() / refresh_token() (key per operation)
- MediaCache.get_or_fetch() (key = cache key, so ten cards asking for the same movie = one TMDB call)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

logger = logging.getLogger(__name__)


class SingleFlight:
    """Run at most one in-flight call per key; concurrent callers share its result."""

    def __init__(self) -> None:
        self._inflight: dict[Hashable, asyncio.Task[Any]] = {}

    # Listen up, the work runs in its OWN task, not in the first caller's coroutine. If the first
    # caller gets cancelled (user navigates away), the task keeps going and the other waiters still
    # get their result. asyncio.shield() is what stops a waiter's cancellation from cancelling the
    # shared task. Exceptions propagate to EVERY waiter - same outcome for everybody.
    async def do[T](self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` unless a call for ``key`` is already in flight, then await the shared result.

        Args:
            key: Identifies the operation being coalesced
            fn: Zero-argument coroutine function doing the actual work

        Returns:
            Result of the single underlying execution
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task
            task.add_done_callback(lambda finished, k=key: self._forget(k, finished))
        else:
            logger.debug("Joining in-flight call for %r", key)
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, finished: asyncio.Task[Any]) -> None:
        # Only drop the entry if it's still ours - a new flight may already have started
        if self._inflight.get(key) is finished:
            del self._inflight[key]
        # Mark the exception as retrieved; every waiter already got it through shield()
        if not finished.cancelled():
            finished.exception()

    def in_flight(self, key: Hashable) -> bool:
        """Check if a call for ``key`` is currently running."""
        return key in self._inflight
