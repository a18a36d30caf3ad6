"""Base cache interface, key derivation and in-memory implementation."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Final, TypeVar

from pandorabox.domain.exceptions import ValidationError
from pandorabox.domain.ports import IClock
from pandorabox.infrastructure.clock import SystemClock

K = TypeVar("K")  # Key type
V = TypeVar("V")  # Value type

KEY_SEPARATOR: Final = "_"
DEFAULT_SUBTYPE: Final = "general"


# Hey future me, MISS exists because payloads are JSON and JSON can be null! If get() returned
# None for "not cached" we couldn't cache a legit null response. MISS is falsy, so
# `if not cached:` still reads naturally, but compare with `is MISS` when the payload itself could
# be falsy ([] or {} or 0). A miss is NOT an error - it just means "go fetch".
class CacheMiss:
    """Sentinel returned by BaseCache.get() for absent or expired entries."""

    _instance: "CacheMiss | None" = None

    def __new__(cls) -> "CacheMiss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS: Final = CacheMiss()


# Yo, keys look like "tmdb_550_movie". The separator is banned inside source and subtype (NOT
# inside external_id - search keys like "search_matrix_all_1" need underscores). With both ends
# separator-free, the first "_" always ends the source and the last "_" always starts the subtype,
# so two different triples can never produce the same key. split_key() relies on exactly that.
def derive_key(source: str, external_id: str | int, subtype: str = DEFAULT_SUBTYPE) -> str:
    """Build the cache key for an upstream resource.

    Args:
        source: Upstream service, e.g. "tmdb" or "watchmode"
        external_id: Id of the resource at that service (may contain "_")
        subtype: Kind of payload, e.g. "movie", "trending", "movie-streaming"

    Returns:
        Deterministic key "<source>_<external_id>_<subtype>"

    Raises:
        ValidationError: If a component is empty or source/subtype contain "_"
    """
    external = str(external_id)
    if not source or not external or not subtype:
        raise ValidationError("Cache key components must not be empty")
    if KEY_SEPARATOR in source:
        raise ValidationError(f"Cache source must not contain '{KEY_SEPARATOR}': {source!r}")
    if KEY_SEPARATOR in subtype:
        raise ValidationError(f"Cache subtype must not contain '{KEY_SEPARATOR}': {subtype!r}")
    return f"{source}{KEY_SEPARATOR}{external}{KEY_SEPARATOR}{subtype}"


def split_key(key: str) -> tuple[str, str, str]:
    """Inverse of derive_key().

    Raises:
        ValidationError: If the key was not produced by derive_key()
    """
    source, sep, rest = key.partition(KEY_SEPARATOR)
    external, sep2, subtype = rest.rpartition(KEY_SEPARATOR)
    if not sep or not sep2 or not source or not external or not subtype:
        raise ValidationError(f"Not a derived cache key: {key!r}")
    return source, external, subtype


@dataclass
class CacheEntry[V]:
    """Cache entry with value and metadata (epoch seconds from the cache's clock)."""

    value: V
    cached_at: float
    expires_at: float

    # An entry is dead from the very moment expires_at is reached, hence >=.
    def is_expired(self, now: float) -> bool:
        """Check if cache entry is expired at ``now``."""
        return now >= self.expires_at


class BaseCache[K, V](ABC):
    """Base cache interface for all cache implementations."""

    @abstractmethod
    async def get(self, key: K) -> V | CacheMiss:
        """Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value if found and not expired, MISS otherwise
        """
        pass

    @abstractmethod
    async def set(self, key: K, value: V, ttl_seconds: float) -> None:
        """Set value in cache, replacing any previous entry for the key.

        Args:
            key: Cache key
            value: Value to cache
            ttl_seconds: Time to live in seconds (caller decides - see CacheTTL)
        """
        pass

    @abstractmethod
    async def delete(self, key: K) -> bool:
        """Delete value from cache.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries from cache."""
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """
        pass

    async def exists(self, key: K) -> bool:
        """Check if key exists in cache and is not expired."""
        return await self.get(key) is not MISS


class InMemoryCache(BaseCache[K, V]):
    """In-memory cache implementation using a dictionary.

    Lost on restart - use DatabaseCache when entries should survive the process.
    """

    # Hey future me, no asyncio.Lock here! None of these methods await between reading and writing
    # self._cache, so on one event loop nothing can interleave inside them. Concurrent writers for
    # the same key are fetching the same upstream resource anyway, so last-writer-wins is fine.
    def __init__(self, clock: IClock | None = None) -> None:
        """Initialize in-memory cache."""
        self._cache: dict[K, CacheEntry[V]] = {}
        self._clock = clock or SystemClock()

    # get() evicts expired entries on read, so it has a side effect despite the name.
    async def get(self, key: K) -> V | CacheMiss:
        """Get value from cache."""
        entry = self._cache.get(key)
        if entry is None:
            return MISS

        if entry.is_expired(self._clock.time()):
            del self._cache[key]
            return MISS

        return entry.value

    async def set(self, key: K, value: V, ttl_seconds: float) -> None:
        """Set value in cache."""
        now = self._clock.time()
        # Drop the old entry first - at most one entry per key, ever
        self._cache.pop(key, None)
        self._cache[key] = CacheEntry(
            value=value,
            cached_at=now,
            expires_at=now + ttl_seconds,
        )

    # Unlike get(), this doesn't check expiry - it deletes even if expired.
    async def delete(self, key: K) -> bool:
        """Delete value from cache."""
        return self._cache.pop(key, None) is not None

    async def clear(self) -> None:
        """Clear all entries from cache."""
        self._cache.clear()

    # Listen, this is OPTIONAL maintenance. get() already treats expired entries as absent, so
    # correctness never depends on it - it only keeps memory from filling with dead entries.
    # Collect keys first, then delete - never delete while iterating the dict.
    async def purge_expired(self) -> int:
        """Remove expired entries from cache."""
        now = self._clock.time()
        expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._cache[key]
        return len(expired_keys)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dictionary with cache statistics
        """
        now = self._clock.time()
        total_entries = len(self._cache)
        expired_entries = sum(1 for entry in self._cache.values() if entry.is_expired(now))

        return {
            "total_entries": total_entries,
            "active_entries": total_entries - expired_entries,
            "expired_entries": expired_entries,
        }
