"""Caching layer - keeps repeated catalog lookups away from the upstream APIs."""

from pandorabox.application.cache.base_cache import (
    DEFAULT_SUBTYPE,
    MISS,
    BaseCache,
    CacheEntry,
    CacheMiss,
    InMemoryCache,
    derive_key,
    split_key,
)
from pandorabox.application.cache.media_cache import CacheTTL, MediaCache

__all__ = [
    "DEFAULT_SUBTYPE",
    "MISS",
    "BaseCache",
    "CacheEntry",
    "CacheMiss",
    "CacheTTL",
    "InMemoryCache",
    "MediaCache",
    "derive_key",
    "split_key",
]
