"""
Tests for billspine.core.cache.

Covers:
- InMemoryCache: get/set/delete/exists/clear, LRU eviction, TTL expiry
- SqliteCache: persistence, TTL expiry, clear
- TTLCache: JSON payloads, typed helpers, best-effort failure handling
- create_cache backend selection
"""

import sqlite3

import pytest

from billspine.core.cache import InMemoryCache, IndexMeta, SqliteCache, TTLCache, create_cache
from billspine.core.errors import ConfigError
from billspine.core.settings import BillSpineSettings, CacheBackendKind


class TestInMemoryCache:
    """Test InMemoryCache backend."""

    def test_basic_get_set(self):
        cache = InMemoryCache(max_size=100, default_ttl_seconds=None)
        cache.set("key1", {"data": [1, 2, 3]})
        assert cache.get("key1") == {"data": [1, 2, 3]}

    def test_get_missing_key(self):
        assert InMemoryCache().get("missing") is None

    def test_delete(self):
        cache = InMemoryCache()
        cache.set("key1", "value1")
        assert cache.exists("key1")
        cache.delete("key1")
        assert not cache.exists("key1")

    def test_clear(self):
        cache = InMemoryCache()
        for i in range(3):
            cache.set(f"k{i}", i)
        assert cache.size() == 3
        cache.clear()
        assert cache.size() == 0

    def test_ttl_expiry(self, clock):
        """Entries expire once the clock reaches their deadline."""
        cache = InMemoryCache(default_ttl_seconds=120, clock=clock)
        cache.set("lastRow:North", 42)
        clock.advance(119)
        assert cache.get("lastRow:North") == 42
        clock.advance(1)
        assert cache.get("lastRow:North") is None

    def test_ttl_override_default(self, clock):
        cache = InMemoryCache(default_ttl_seconds=3600, clock=clock)
        cache.set("k", "v", ttl_seconds=5)
        clock.advance(5)
        assert not cache.exists("k")

    def test_lru_eviction(self):
        """Least recently used key is evicted when max_size is reached."""
        cache = InMemoryCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.exists("a")
        assert not cache.exists("b")
        assert cache.exists("c")


class TestSqliteCache:
    """SqliteCache shares entries across connections to one database."""

    @pytest.fixture
    def backend(self, clock):
        conn = sqlite3.connect(":memory:")
        cache = SqliteCache(conn, clock=clock)
        cache.ensure_schema()
        yield cache
        conn.close()

    def test_get_set(self, backend):
        backend.set("station:101", "North")
        assert backend.get("station:101") == "North"

    def test_overwrite(self, backend):
        backend.set("k", 1)
        backend.set("k", 2)
        assert backend.get("k") == 2

    def test_ttl_expiry(self, backend, clock):
        backend.set("k", "v", ttl_seconds=10)
        clock.advance(10)
        assert backend.get("k") is None
        assert not backend.exists("k")

    def test_delete_and_clear(self, backend):
        backend.set("a", 1)
        backend.set("b", 2)
        backend.delete("a")
        assert backend.get("a") is None
        backend.clear()
        assert backend.get("b") is None

    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "cache.db"
        first = sqlite3.connect(path)
        writer = SqliteCache(first)
        writer.ensure_schema()
        writer.set("index:count", 8)
        first.close()

        second = sqlite3.connect(path)
        assert SqliteCache(second).get("index:count") == 8
        second.close()


class _BrokenBackend:
    """Backend whose every call fails."""

    def get(self, key):
        raise ConnectionError("backend down")

    def set(self, key, value, *, ttl_seconds=None):
        raise ConnectionError("backend down")

    def delete(self, key):
        raise ConnectionError("backend down")

    def exists(self, key):
        raise ConnectionError("backend down")

    def clear(self):
        raise ConnectionError("backend down")


class TestTTLCache:
    """TTLCache is best-effort: failures are misses, never exceptions."""

    @pytest.fixture
    def backend(self, clock):
        return InMemoryCache(clock=clock)

    @pytest.fixture
    def ttl_cache(self, backend):
        return TTLCache(backend, ttl_last_row=120, ttl_record=300, ttl_station=300, ttl_index=900)

    def test_values_stored_as_json(self, ttl_cache, backend):
        ttl_cache.put("k", {"a": [1, 2]}, 60)
        assert backend.get("k") == '{"a": [1, 2]}'
        assert ttl_cache.get("k") == {"a": [1, 2]}

    def test_invalid_payload_is_miss(self, ttl_cache, backend):
        backend.set("rec:NTH101/1", "{not json")
        assert ttl_cache.get("rec:NTH101/1") is None
        assert ttl_cache.get_record("NTH101/1") is None

    def test_backend_failures_swallowed(self):
        broken = TTLCache(_BrokenBackend())
        assert broken.get("anything") is None
        broken.put("anything", 1, 60)
        broken.remove("anything")
        broken.put_index_meta(["a"], 1)
        assert broken.get_index_meta() is None

    def test_unserializable_value_dropped(self, ttl_cache):
        ttl_cache.put("k", object(), 60)
        assert ttl_cache.get("k") is None

    def test_record_round_trip_as_tuple(self, ttl_cache):
        ttl_cache.put_record("NTH101/1", ("INV", "", "NTH101/1", 4))
        assert ttl_cache.get_record("NTH101/1") == ("INV", "", "NTH101/1", 4)

    def test_record_expires(self, ttl_cache, clock):
        ttl_cache.put_record("NTH101/1", ["x"])
        clock.advance(300)
        assert ttl_cache.get_record("NTH101/1") is None

    def test_wrong_shape_is_miss(self, ttl_cache):
        ttl_cache.put("lastRow:North", "12", 60)
        ttl_cache.put("station:101", 7, 60)
        assert ttl_cache.get_last_row("North") is None
        assert ttl_cache.get_station("101") is None

    def test_last_row(self, ttl_cache, clock):
        ttl_cache.put_last_row("North", 12)
        assert ttl_cache.get_last_row("North") == 12
        ttl_cache.invalidate_last_row("North")
        assert ttl_cache.get_last_row("North") is None

        ttl_cache.put_last_row("North", 12)
        clock.advance(120)
        assert ttl_cache.get_last_row("North") is None

    def test_station(self, ttl_cache):
        ttl_cache.put_station("101", "North")
        assert ttl_cache.get_station("101") == "North"

    def test_index_meta(self, ttl_cache, clock):
        ttl_cache.put_index_meta(["A/1", "M/1"], 15)
        assert ttl_cache.get_index_meta() == IndexMeta(["A/1", "M/1"], 15)
        clock.advance(899)
        assert ttl_cache.get_index_meta() is not None
        clock.advance(1)
        assert ttl_cache.get_index_meta() is None

    def test_index_meta_needs_both_keys(self, ttl_cache):
        ttl_cache.put("index:boundaries", ["A/1"], 900)
        assert ttl_cache.get_index_meta() is None

    def test_clear_index_meta(self, ttl_cache):
        ttl_cache.put_index_meta(["A/1"], 1)
        ttl_cache.clear_index_meta()
        assert ttl_cache.get_index_meta() is None


class TestCreateCache:
    def test_memory_backend(self):
        settings = BillSpineSettings(cache_backend=CacheBackendKind.MEMORY, ttl_record=42)
        cache = create_cache(settings)
        assert isinstance(cache.backend, InMemoryCache)
        assert cache.ttl_record == 42

    def test_sqlite_backend(self):
        conn = sqlite3.connect(":memory:")
        cache = create_cache(BillSpineSettings(cache_backend="sqlite"), conn)
        assert isinstance(cache.backend, SqliteCache)
        cache.put_station("101", "North")
        assert cache.get_station("101") == "North"
        conn.close()

    def test_sqlite_backend_needs_connection(self):
        with pytest.raises(ConfigError):
            create_cache(BillSpineSettings(cache_backend="sqlite"))
