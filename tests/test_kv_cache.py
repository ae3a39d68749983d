import aiosqlite
import pytest

from tunecast.kv_cache import cache_key

pytestmark = pytest.mark.anyio


class TestCacheKey:
    def test_stable_and_hex(self):
        key = cache_key("search", "lofi", 10)
        assert key == cache_key("search", "lofi", 10)
        assert len(key) == 64
        int(key, 16)

    def test_dict_order_does_not_matter(self):
        assert cache_key({"a": 1, "b": 2}) == cache_key({"b": 2, "a": 1})

    def test_namespace_and_version_change_the_key(self):
        base = cache_key("x")
        assert cache_key("x", namespace="file") != base
        assert cache_key("x", version=2) != base

    def test_argument_boundaries_matter(self):
        assert cache_key("ab", "c") != cache_key("a", "bc")


class TestKeyValueCache:
    async def test_set_and_get(self, kv_cache):
        await kv_cache.set("some-key", {"tracks": [1, 2]}, expires_in=60)
        assert await kv_cache.get("some-key") == {"tracks": [1, 2]}

    async def test_missing_key(self, kv_cache):
        assert await kv_cache.get("nope") is None

    async def test_expired_rows_are_deleted(self, kv_cache, db_path):
        await kv_cache.set("short", "v", expires_in=10)
        kv_cache.clock.now += 11
        assert await kv_cache.get("short") is None
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM key_value_cache WHERE key = 'short'")
            assert (await cursor.fetchone())[0] == 0

    async def test_corrupt_row_is_a_miss(self, kv_cache, db_path):
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                "INSERT INTO key_value_cache (key, value, expires_at) VALUES (?, ?, ?)",
                ("broken", "{not json", kv_cache.clock() + 100),
            )
            await db.commit()
        assert await kv_cache.get("broken") is None

    async def test_set_overwrites(self, kv_cache):
        await kv_cache.set("k123", 1, expires_in=60)
        await kv_cache.set("k123", 2, expires_in=60)
        assert await kv_cache.get("k123") == 2

    async def test_wrap_calls_once(self, kv_cache):
        calls = []

        async def fetch(query, limit):
            calls.append((query, limit))
            return [query] * limit

        assert await kv_cache.wrap(fetch, "lofi", 2, expires_in=60) == ["lofi", "lofi"]
        assert await kv_cache.wrap(fetch, "lofi", 2, expires_in=60) == ["lofi", "lofi"]
        assert calls == [("lofi", 2)]

        await kv_cache.wrap(fetch, "jazz", 2, expires_in=60)
        assert len(calls) == 2

    async def test_wrap_with_explicit_key(self, kv_cache):
        async def fetch():
            return "value"

        await kv_cache.wrap(fetch, expires_in=60, key="explicit-key")
        assert await kv_cache.get("explicit-key") == "value"

    async def test_wrap_rejects_short_keys(self, kv_cache):
        async def fetch():
            return 1

        with pytest.raises(ValueError):
            await kv_cache.wrap(fetch, expires_in=60, key="abc")
