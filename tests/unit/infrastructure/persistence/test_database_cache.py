"""Tests for DatabaseCache on an in-memory aiosqlite database."""

import pytest

from pandorabox.application.cache.base_cache import MISS
from pandorabox.application.cache.media_cache import MediaCache
from pandorabox.infrastructure.persistence.database import (
    Database,
    ensure_sqlite_directory,
    is_memory_sqlite,
)
from pandorabox.infrastructure.persistence.database_cache import DatabaseCache


@pytest.fixture
async def database():
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def cache(database, clock) -> DatabaseCache:
    return DatabaseCache(database, clock)


class TestDatabaseCache:
    """Test DatabaseCache semantics (same contract as InMemoryCache)."""

    @pytest.mark.asyncio
    async def test_miss(self, cache) -> None:
        assert await cache.get("tmdb_1_movie") is MISS

    @pytest.mark.asyncio
    async def test_json_payload_round_trip(self, cache) -> None:
        payload = {"id": 550, "title": "Fight Club", "genres": ["Drama"], "rating": 8.4}

        await cache.set("tmdb_550_movie", payload, 60)

        assert await cache.get("tmdb_550_movie") == payload

    @pytest.mark.asyncio
    async def test_cached_null_is_a_hit(self, cache) -> None:
        await cache.set("tmdb_0_movie", None, 60)

        assert await cache.get("tmdb_0_movie") is None
        assert await cache.exists("tmdb_0_movie")

    @pytest.mark.asyncio
    async def test_expiry_boundary(self, cache, clock) -> None:
        await cache.set("k_1_x", "v", 60)

        clock.advance(59.999)
        assert await cache.get("k_1_x") == "v"
        clock.advance(0.001)
        assert await cache.get("k_1_x") is MISS
        assert (await cache.get_stats())["total_entries"] == 0

    @pytest.mark.asyncio
    async def test_set_overwrites_single_row(self, cache) -> None:
        await cache.set("k_1_x", "old", 60)
        await cache.set("k_1_x", "new", 60)

        assert await cache.get("k_1_x") == "new"
        assert (await cache.get_stats())["total_entries"] == 1

    @pytest.mark.asyncio
    async def test_delete(self, cache) -> None:
        await cache.set("k_1_x", "v", 60)

        assert await cache.delete("k_1_x") is True
        assert await cache.delete("k_1_x") is False

    @pytest.mark.asyncio
    async def test_clear(self, cache) -> None:
        await cache.set("a_1_x", 1, 60)
        await cache.set("b_1_x", 2, 60)

        await cache.clear()

        assert (await cache.get_stats())["total_entries"] == 0

    @pytest.mark.asyncio
    async def test_purge_expired(self, cache, clock) -> None:
        await cache.set("short_1_x", 1, 10)
        await cache.set("long_1_x", 2, 100)
        clock.advance(10)

        assert await cache.get_stats() == {
            "total_entries": 2,
            "active_entries": 1,
            "expired_entries": 1,
        }
        assert await cache.purge_expired() == 1
        assert await cache.purge_expired() == 0
        assert await cache.get("long_1_x") == 2

    @pytest.mark.asyncio
    async def test_media_cache_on_database_backend(self, cache) -> None:
        media_cache = MediaCache(cache)
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return {"results": [1, 2, 3]}

        await media_cache.get_trending("all", 1, fetch)
        assert await media_cache.get_trending("all", 1, fetch) == {"results": [1, 2, 3]}
        assert calls == 1


class TestDatabaseHelpers:
    """Test SQLite URL helpers."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("sqlite://", True),
            ("sqlite:///:memory:", True),
            ("sqlite+aiosqlite:///:memory:", True),
            ("sqlite:///./data/pandora.db", False),
            ("sqlite+aiosqlite:////var/lib/pandora/cache.db", False),
            ("postgresql://user@host/db", False),
        ],
    )
    def test_is_memory_sqlite(self, url, expected) -> None:
        assert is_memory_sqlite(url) is expected

    def test_ensure_sqlite_directory(self, tmp_path) -> None:
        target = tmp_path / "a" / "b" / "cache.db"

        ensure_sqlite_directory(f"sqlite+aiosqlite:///{target}")

        assert target.parent.is_dir()
        assert not target.exists()

    @pytest.mark.asyncio
    async def test_file_backed_cache_survives_restart(self, tmp_path, clock) -> None:
        url = f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"
        first = Database(url)
        await first.create_tables()
        await DatabaseCache(first, clock).set("tmdb_1_movie", {"id": 1}, 60)
        await first.close()

        second = Database(url)
        try:
            await second.create_tables()
            assert await DatabaseCache(second, clock).get("tmdb_1_movie") == {"id": 1}
        finally:
            await second.close()
