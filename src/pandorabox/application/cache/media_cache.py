"""Metadata cache in front of the upstream catalog (TMDB) and streaming lookups (Watchmode).

Hey future me - TMDB rate-limits us and is SLOW from a home server. Every page (dashboard,
movies, details) goes through here so repeated navigation hits the cache instead of the API.

The cache itself knows nothing about TTLs - the policy lives in CacheTTL and is applied by the
helpers below. Key layout is derive_key(source, external_id, subtype), e.g.:
    tmdb_550_movie                 -> movie details
    tmdb_trending_all_1_trending   -> trending list page 1
    watchmode_550_movie-streaming  -> streaming availability
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Final

from pandorabox.application.cache.base_cache import (
    DEFAULT_SUBTYPE,
    MISS,
    BaseCache,
    InMemoryCache,
    derive_key,
)
from pandorabox.application.services.sessions.single_flight import SingleFlight

logger = logging.getLogger(__name__)

HOUR: Final = 3600

SOURCE_CATALOG: Final = "tmdb"
SOURCE_STREAMING: Final = "watchmode"


class CacheTTL:
    """Per-class TTL policy (seconds)."""

    # Hey future me - trending/popular lists shift a few times a day, search results a bit more
    # often, details (cast, runtime, overview) almost never. Streaming availability changes when
    # providers rotate catalogs, so half a day is a good compromise.
    TRENDING = 6 * HOUR
    SEARCH = 2 * HOUR
    DETAILS = 24 * HOUR
    STREAMING = 12 * HOUR


Fetch = Callable[[], Awaitable[Any]]


class MediaCache:
    """Cache for catalog and streaming-availability responses.

    Cache keys are built with derive_key() so entries written here line up with whatever
    backend (memory or database) sits underneath.
    """

    def __init__(self, cache: BaseCache[str, Any] | None = None) -> None:
        """Initialize media cache.

        Args:
            cache: Backend to store entries in (defaults to an InMemoryCache)
        """
        self._cache: BaseCache[str, Any] = cache if cache is not None else InMemoryCache()
        self._inflight = SingleFlight()

    @property
    def backend(self) -> BaseCache[str, Any]:
        """The underlying cache backend."""
        return self._cache

    async def get(
        self, source: str, external_id: str | int, subtype: str = DEFAULT_SUBTYPE
    ) -> Any:
        """Get a cached payload, MISS if absent or expired."""
        return await self._cache.get(derive_key(source, external_id, subtype))

    async def put(
        self,
        source: str,
        external_id: str | int,
        payload: Any,
        ttl_seconds: float,
        subtype: str = DEFAULT_SUBTYPE,
    ) -> None:
        """Store a payload under its derived key."""
        await self._cache.set(derive_key(source, external_id, subtype), payload, ttl_seconds)

    # Listen up, this is THE method the proxy layer should use. Cache hit = no network. Cache miss =
    # one fetch, even when five components miss the same key at once (SingleFlight on the key).
    # If fetch() raises, NOTHING is cached and every waiter gets the exception - next call retries.
    async def get_or_fetch(
        self,
        source: str,
        external_id: str | int,
        fetch: Fetch,
        ttl_seconds: float,
        subtype: str = DEFAULT_SUBTYPE,
    ) -> Any:
        """Return the cached payload or fetch, cache and return it.

        Args:
            source: Upstream service name
            external_id: Resource id at that service
            fetch: Coroutine function performing the upstream call
            ttl_seconds: How long the fetched payload stays valid
            subtype: Payload kind

        Returns:
            Cached or freshly fetched payload
        """
        key = derive_key(source, external_id, subtype)
        cached = await self._cache.get(key)
        if cached is not MISS:
            logger.debug("Cache hit: %s", key)
            return cached

        async def _load() -> Any:
            logger.debug("Cache miss: %s", key)
            payload = await fetch()
            await self._cache.set(key, payload, ttl_seconds)
            return payload

        return await self._inflight.do(key, _load)

    # =========================================================================
    # CATALOG HELPERS
    # =========================================================================

    async def get_trending(self, media_type: str, page: int, fetch: Fetch) -> Any:
        """Trending list for "movie", "tv" or "all"."""
        return await self.get_or_fetch(
            SOURCE_CATALOG, f"trending_{media_type}_{page}", fetch, CacheTTL.TRENDING, "trending"
        )

    async def get_latest(self, media_type: str, page: int, fetch: Fetch) -> Any:
        """Latest/popular list for "movie" or "tv"."""
        return await self.get_or_fetch(
            SOURCE_CATALOG, f"latest_{media_type}_{page}", fetch, CacheTTL.TRENDING, media_type
        )

    async def search(
        self, query: str, media_type: str | None, page: int, fetch: Fetch
    ) -> Any:
        """Search results for a query, optionally restricted to one media type."""
        external_id = f"search_{query}_{media_type or 'all'}_{page}"
        return await self.get_or_fetch(
            SOURCE_CATALOG, external_id, fetch, CacheTTL.SEARCH, "search"
        )

    async def get_details(self, media_type: str, item_id: str | int, fetch: Fetch) -> Any:
        """Details of one movie or show."""
        return await self.get_or_fetch(
            SOURCE_CATALOG, item_id, fetch, CacheTTL.DETAILS, media_type
        )

    async def get_streaming(self, media_type: str, item_id: str | int, fetch: Fetch) -> Any:
        """Streaming availability of one movie or show."""
        return await self.get_or_fetch(
            SOURCE_STREAMING, item_id, fetch, CacheTTL.STREAMING, f"{media_type}-streaming"
        )

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def invalidate(
        self, source: str, external_id: str | int, subtype: str = DEFAULT_SUBTYPE
    ) -> bool:
        """Drop one entry.

        Returns:
            True if invalidated, False if not found
        """
        return await self._cache.delete(derive_key(source, external_id, subtype))

    async def clear(self) -> None:
        """Drop everything."""
        await self._cache.clear()
        logger.info("Media cache cleared")

    async def purge_expired(self) -> int:
        """Remove expired entries from the backend."""
        return await self._cache.purge_expired()
