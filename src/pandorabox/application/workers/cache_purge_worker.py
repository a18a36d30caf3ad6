"""Cache Purge Worker - periodically deletes expired metadata cache entries.

Hey future me - this is pure housekeeping. get() already treats expired entries as absent, so the
cache is CORRECT without this worker; it only stops the media_cache table from growing with dead
rows forever. If it crashes or is disabled nothing breaks, the DB just gets fatter.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from pandorabox.application.cache.media_cache import MediaCache

logger = logging.getLogger(__name__)


class CachePurgeWorker:
    """Worker that calls purge_expired() on the media cache at a fixed interval."""

    def __init__(self, cache: MediaCache, interval_seconds: float = 3600.0) -> None:
        """Initialize the purge worker.

        Args:
            cache: Media cache to sweep
            interval_seconds: Seconds between sweeps
        """
        self._cache = cache
        self._interval = interval_seconds
        self._running = False
        self._wakeup = asyncio.Event()

        self._total_purged = 0
        self._runs = 0
        self._errors = 0
        self._last_run: datetime | None = None

    # Runs until stop() is called. Start it with asyncio.create_task(worker.start()).
    async def start(self) -> None:
        """Start the purge loop."""
        self._running = True
        self._wakeup.clear()
        logger.info("CachePurgeWorker started (interval=%.0fs)", self._interval)

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                self._errors += 1
                logger.exception("CachePurgeWorker error: %s", e)

            # Sleep, but wake up immediately when stop() is called
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._interval)
            except TimeoutError:
                pass

        logger.info("CachePurgeWorker stopped")

    def stop(self) -> None:
        """Signal the worker to stop."""
        self._running = False
        self._wakeup.set()

    async def run_once(self) -> int:
        """Run one sweep.

        Returns:
            Number of entries removed
        """
        removed = await self._cache.purge_expired()
        self._runs += 1
        self._total_purged += removed
        self._last_run = datetime.now(UTC)
        if removed:
            logger.info("Purged %d expired cache entries", removed)
        return removed

    def get_status(self) -> dict[str, Any]:
        """Get worker status for monitoring.

        Returns:
            Dict with running state and sweep counters
        """
        return {
            "name": "Cache Purge",
            "running": self._running,
            "interval_seconds": self._interval,
            "runs": self._runs,
            "total_purged": self._total_purged,
            "errors": self._errors,
            "last_run": self._last_run.isoformat() if self._last_run else None,
        }
