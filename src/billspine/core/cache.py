"""
TTL caching layer with pluggable backends.

Provides a ``CacheBackend`` protocol with in-memory, SQLite and Redis
implementations, and :class:`TTLCache`, the best-effort capability object
the lookup and reconciliation components receive by injection.

Manifesto:
    Every cached fact in this subsystem can be recomputed from the row
    store, so caching is strictly an optimization. A cache that is down,
    full, or holding garbage must degrade to a miss, never to a failed
    lookup.

    - **Protocol-based:** CacheBackend defines the contract
    - **Best-effort:** TTLCache swallows write failures, treats bad payloads as misses
    - **Lossless values:** JSON-serialized; tuples come back as tuples via typed helpers
    - **Bounded staleness:** every entry carries a TTL, no other eviction policy

Architecture:
    ::

        TTLCache (best-effort, JSON payloads, typed helpers)
            │
            ▼
        CacheBackend (Protocol)
        ├── InMemoryCache  — single process, bounded LRU + TTL
        ├── SqliteCache    — shared by CLI processes via the row-store database
        └── RedisCache     — distributed (``redis`` extra)

        Keys:
            rec:<bill key>        resolved backing record     300s
            station:<code>        station table name          300s
            lastRow:<table>       last occupied row           120s
            index:boundaries      boundary list               900s
            index:count           index entry count           900s

Examples:
    >>> cache = TTLCache(InMemoryCache())
    >>> cache.put_record("A001/1", ("x", "A001/1"))
    >>> cache.get_record("A001/1")
    ('x', 'A001/1')

Performance:
    - InMemoryCache: O(1) get/set (LRU bookkeeping aside)
    - SqliteCache: one indexed SELECT/UPSERT per call
    - TTL cleanup: lazy (checked on get)

Tags:
    cache, caching, ttl, redis, sqlite, billspine

Doc-Types:
    - API Reference
    - Technical Design
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from billspine.core.errors import CacheWriteError
from billspine.core.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class CacheBackend(Protocol):
    """Protocol for cache backend implementations.

    Keys are strings, values are JSON-serializable.
    """

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` if missing or expired."""
        ...

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a value; ``ttl_seconds=None`` uses the backend default."""
        ...

    def delete(self, key: str) -> None:
        """Remove a key. No-op if it does not exist."""
        ...

    def exists(self, key: str) -> bool:
        """Check if a key exists and has not expired."""
        ...

    def clear(self) -> None:
        """Remove all keys."""
        ...


# ------------------------------------------------------------------ #
# In-Memory Cache
# ------------------------------------------------------------------ #


class InMemoryCache:
    """Bounded in-memory cache with TTL support.

    Uses LRU eviction when ``max_size`` is reached.

    Example:
        cache = InMemoryCache(max_size=500, default_ttl_seconds=300)
        cache.set("rec:A001/1", ["..."], ttl_seconds=300)
    """

    def __init__(
        self,
        *,
        max_size: int = 10_000,
        default_ttl_seconds: int | None = 300,
        clock: Clock = time.time,
    ):
        self._store: dict[str, tuple[Any, float | None]] = {}
        self._access_order: list[str] = []
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    def get(self, key: str) -> Any | None:
        """Retrieve a value by key."""
        if key not in self._store:
            return None

        value, expires_at = self._store[key]
        if expires_at is not None and self._clock() >= expires_at:
            self.delete(key)
            return None

        self._touch(key)
        return value

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """Store a value with optional TTL."""
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = (self._clock() + ttl) if ttl else None

        # Evict LRU if at capacity
        if key not in self._store and len(self._store) >= self._max_size:
            if self._access_order:
                lru_key = self._access_order.pop(0)
                self._store.pop(lru_key, None)

        self._store[key] = (value, expires_at)
        self._touch(key)

    def delete(self, key: str) -> None:
        """Remove a key from the cache."""
        self._store.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)

    def exists(self, key: str) -> bool:
        """Check if key exists and is not expired."""
        return self.get(key) is not None

    def clear(self) -> None:
        """Remove all keys."""
        self._store.clear()
        self._access_order.clear()

    def size(self) -> int:
        """Return current number of cached keys."""
        return len(self._store)

    def _touch(self, key: str) -> None:
        if key in self._access_order:
            self._access_order.remove(key)
        self._access_order.append(key)


# ------------------------------------------------------------------ #
# SQLite Cache
# ------------------------------------------------------------------ #


class SqliteCache:
    """Cache entries persisted next to the SQLite row store.

    Lets separate CLI invocations (index rebuild, then lookups) share the
    boundary list and resolved records the way a process-wide cache would.

    Args:
        conn: sqlite3 connection (or anything exposing ``execute``/``commit``).
    """

    def __init__(
        self,
        conn: Any,
        *,
        default_ttl_seconds: int | None = 300,
        clock: Clock = time.time,
    ) -> None:
        self._conn = conn
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    def ensure_schema(self) -> None:
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS bs_cache ("
            "  key TEXT PRIMARY KEY,"
            "  value TEXT NOT NULL,"
            "  expires_at REAL"
            ")"
        )
        self._conn.commit()

    def get(self, key: str) -> Any | None:
        row = self._conn.execute(
            "SELECT value, expires_at FROM bs_cache WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        if row[1] is not None and self._clock() >= row[1]:
            self.delete(key)
            return None
        return json.loads(row[0])

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = (self._clock() + ttl) if ttl else None
        self._conn.execute(
            "INSERT INTO bs_cache (key, value, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET "
            "  value = excluded.value, expires_at = excluded.expires_at",
            (key, json.dumps(value), expires_at),
        )
        self._conn.commit()

    def delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM bs_cache WHERE key = ?", (key,))
        self._conn.commit()

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        self._conn.execute("DELETE FROM bs_cache")
        self._conn.commit()


# ------------------------------------------------------------------ #
# Redis Cache (optional)
# ------------------------------------------------------------------ #


class RedisCache:
    """Redis-backed distributed cache.

    Requires the ``redis`` package (``pip install billspine[redis]``).

    Raises:
        ImportError: If ``redis`` package is not installed.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        default_ttl_seconds: int | None = 300,
    ):
        try:
            import redis
        except ImportError as exc:
            msg = (
                "Redis backend requires 'redis' package. "
                "Install with: pip install billspine[redis]"
            )
            raise ImportError(msg) from exc

        self._client = redis.from_url(url, decode_responses=False)
        self._default_ttl = default_ttl_seconds

    def get(self, key: str) -> Any | None:
        raw = self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        serialized = json.dumps(value)
        if ttl:
            self._client.setex(key, ttl, serialized)
        else:
            self._client.set(key, serialized)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def clear(self) -> None:
        """Flush the current Redis database."""
        self._client.flushdb()


# ------------------------------------------------------------------ #
# TTLCache: best-effort facade used by the core
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class IndexMeta:
    """Cached index metadata: boundary list and total entry count."""

    boundaries: list[str]
    count: int


class TTLCache:
    """Best-effort key/value cache with per-entry TTL.

    Values are serialized to JSON strings before reaching the backend.
    A payload that fails to deserialize is a miss; a backend failure on
    ``get`` is a miss; a backend failure on ``put``/``remove`` is logged
    and dropped.

    Attributes:
        ttl_last_row: TTL for a table's last occupied row.
        ttl_record: TTL for resolved backing records.
        ttl_station: TTL for station-name lookups.
        ttl_index: TTL for boundary list and entry count.
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        ttl_last_row: int = 120,
        ttl_record: int = 300,
        ttl_station: int = 300,
        ttl_index: int = 900,
    ) -> None:
        self.backend = backend
        self.ttl_last_row = ttl_last_row
        self.ttl_record = ttl_record
        self.ttl_station = ttl_station
        self.ttl_index = ttl_index

    # -- generic API ---------------------------------------------------------

    def get(self, key: str) -> Any | None:
        try:
            raw = self.backend.get(key)
        except Exception as exc:  # noqa: BLE001 - any backend failure is a miss
            logger.debug("cache_get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("cache_payload_invalid", key=key)
            return None

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            payload = json.dumps(value)
            self.backend.set(key, payload, ttl_seconds=ttl_seconds)
        except Exception as exc:  # noqa: BLE001 - caching is an optimization
            error = CacheWriteError("cache write dropped", cause=exc).with_context(key=key)
            logger.debug("cache_write_dropped", **error.to_dict())

    def remove(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except Exception as exc:  # noqa: BLE001
            logger.debug("cache_remove_failed", key=key, error=str(exc))

    # -- last occupied row ---------------------------------------------------

    def get_last_row(self, table: str) -> int | None:
        value = self.get(f"lastRow:{table}")
        return value if isinstance(value, int) else None

    def put_last_row(self, table: str, row: int) -> None:
        self.put(f"lastRow:{table}", row, self.ttl_last_row)

    def invalidate_last_row(self, table: str) -> None:
        self.remove(f"lastRow:{table}")

    # -- resolved records ----------------------------------------------------

    def get_record(self, key: str) -> tuple[Any, ...] | None:
        value = self.get(f"rec:{key}")
        return tuple(value) if isinstance(value, list) else None

    def put_record(self, key: str, record: tuple[Any, ...] | list[Any]) -> None:
        self.put(f"rec:{key}", list(record), self.ttl_record)

    # -- station names -------------------------------------------------------

    def get_station(self, code: str) -> str | None:
        value = self.get(f"station:{code}")
        return value if isinstance(value, str) else None

    def put_station(self, code: str, name: str) -> None:
        self.put(f"station:{code}", name, self.ttl_station)

    # -- index metadata ------------------------------------------------------

    def get_index_meta(self) -> IndexMeta | None:
        boundaries = self.get("index:boundaries")
        count = self.get("index:count")
        if not isinstance(boundaries, list) or not isinstance(count, int):
            return None
        return IndexMeta(boundaries=[str(b) for b in boundaries], count=count)

    def put_index_meta(self, boundaries: list[str], count: int) -> None:
        self.put("index:boundaries", boundaries, self.ttl_index)
        self.put("index:count", count, self.ttl_index)

    def clear_index_meta(self) -> None:
        self.remove("index:boundaries")
        self.remove("index:count")


def create_cache(settings: Any, conn: Any | None = None) -> TTLCache:
    """Build a :class:`TTLCache` for the configured backend.

    Args:
        settings: :class:`~billspine.core.settings.BillSpineSettings`.
        conn: SQLite connection, required for the ``sqlite`` backend.
    """
    from billspine.core.errors import ConfigError
    from billspine.core.settings import CacheBackendKind

    kind = CacheBackendKind(settings.cache_backend)
    backend: CacheBackend
    if kind is CacheBackendKind.MEMORY:
        backend = InMemoryCache(max_size=settings.cache_max_size)
    elif kind is CacheBackendKind.SQLITE:
        if conn is None:
            raise ConfigError("sqlite cache backend needs a database connection")
        sqlite_cache = SqliteCache(conn)
        sqlite_cache.ensure_schema()
        backend = sqlite_cache
    else:
        backend = RedisCache(settings.redis_url)

    return TTLCache(
        backend,
        ttl_last_row=settings.ttl_last_row,
        ttl_record=settings.ttl_record,
        ttl_station=settings.ttl_station,
        ttl_index=settings.ttl_index,
    )


__all__ = [
    "CacheBackend",
    "InMemoryCache",
    "SqliteCache",
    "RedisCache",
    "IndexMeta",
    "TTLCache",
    "create_cache",
]
