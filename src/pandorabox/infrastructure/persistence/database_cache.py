"""Database-backed cache - catalog responses that survive a restart."""

import logging
from typing import Any

from sqlalchemy import delete, func, select

from pandorabox.application.cache.base_cache import MISS, BaseCache, CacheMiss
from pandorabox.domain.ports import IClock
from pandorabox.infrastructure.clock import SystemClock
from pandorabox.infrastructure.persistence.database import Database
from pandorabox.infrastructure.persistence.models import MediaCacheModel

logger = logging.getLogger(__name__)


class DatabaseCache(BaseCache[str, Any]):
    """BaseCache stored in the media_cache table.

    Payloads must be JSON-serializable (they come straight from upstream JSON APIs anyway).
    """

    def __init__(self, database: Database, clock: IClock | None = None) -> None:
        """Initialize database cache.

        Args:
            database: Async database (tables must exist - see Database.create_tables)
            clock: Time source for cached_at/expires_at
        """
        self._db = database
        self._clock = clock or SystemClock()

    # Expired rows are deleted right here, same lazy eviction as InMemoryCache.get().
    async def get(self, key: str) -> Any | CacheMiss:
        """Get value from cache."""
        async with self._db.session_scope() as session:
            row = await session.get(MediaCacheModel, key)
            if row is None:
                return MISS
            if self._clock.time() >= row.expires_at:
                await session.delete(row)
                return MISS
            return row.payload

    # Hey future me, delete-then-insert in ONE transaction. The key is the primary key, so even two
    # racing writers can't leave two rows behind - the loser's transaction fails or overwrites,
    # and either way exactly one entry remains (last writer wins).
    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Set value in cache."""
        now = self._clock.time()
        async with self._db.session_scope() as session:
            await session.execute(delete(MediaCacheModel).where(MediaCacheModel.key == key))
            session.add(
                MediaCacheModel(
                    key=key,
                    payload=value,
                    cached_at=now,
                    expires_at=now + ttl_seconds,
                )
            )

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        async with self._db.session_scope() as session:
            result = await session.execute(
                delete(MediaCacheModel).where(MediaCacheModel.key == key)
            )
            return bool(result.rowcount)

    async def clear(self) -> None:
        """Clear all entries from cache."""
        async with self._db.session_scope() as session:
            await session.execute(delete(MediaCacheModel))

    async def purge_expired(self) -> int:
        """Remove expired entries from cache."""
        now = self._clock.time()
        async with self._db.session_scope() as session:
            result = await session.execute(
                delete(MediaCacheModel).where(MediaCacheModel.expires_at <= now)
            )
            removed = result.rowcount or 0
        if removed:
            logger.debug("Purged %d expired cache entries", removed)
        return removed

    async def get_stats(self) -> dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dictionary with cache statistics
        """
        now = self._clock.time()
        async with self._db.session_scope() as session:
            total_entries = await session.scalar(select(func.count()).select_from(MediaCacheModel))
            expired_entries = await session.scalar(
                select(func.count())
                .select_from(MediaCacheModel)
                .where(MediaCacheModel.expires_at <= now)
            )
        total = total_entries or 0
        expired = expired_entries or 0
        return {
            "total_entries": total,
            "active_entries": total - expired,
            "expired_entries": expired,
        }
