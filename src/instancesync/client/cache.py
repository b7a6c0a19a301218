"""Offline-aware read cache for remote data.

This module provides:
- CacheStore: SQLite-backed namespaced key/value store with expiry
- RequestCache: Network-first fetch with TTL-bounded cache fallback
- FetchResult: Tagged result returned by RequestCache.fetch()

RequestCache is a read-path convenience only. It never queues
mutations and has no retry semantics beyond the caller's next call.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from instancesync.client.connectivity import ConnectivityMonitor

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache_"
DEFAULT_CACHE_TTL = 24 * 60 * 60  # seconds


@dataclass
class CacheEntry:
    """A cached value with its write and expiry timestamps."""

    data: Any
    timestamp: float
    expires_at: float

    def is_fresh(self, now: float | None = None) -> bool:
        """Check whether the entry has not yet expired."""
        return self.expires_at > (time.time() if now is None else now)


class CacheStore:
    """SQLite-backed storage for cache entries.

    Keys are stored with a common prefix so that all cached data can be
    invalidated without touching unrelated keys.
    """

    def __init__(self, db_path: Path, prefix: str = CACHE_PREFIX) -> None:
        """Initialize the cache database.

        Args:
            db_path: Path to SQLite database file.
            prefix: Namespace prefix applied to every key.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._prefix = prefix
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                timestamp REAL NOT NULL,
                expires_at REAL NOT NULL
            )
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> CacheEntry | None:
        """Get an entry, or None if missing or unreadable.

        Unreadable entries are purged.
        """
        full_key = self._full_key(key)
        with self._lock:
            row = self._conn.execute(
                "SELECT data, timestamp, expires_at FROM cache_entries WHERE key = ?",
                (full_key,),
            ).fetchone()
            if row is None:
                return None
            try:
                data = json.loads(row["data"])
            except json.JSONDecodeError:
                logger.warning("Discarding unreadable cache entry %s", key)
                self._conn.execute("DELETE FROM cache_entries WHERE key = ?", (full_key,))
                return None
        return CacheEntry(data=data, timestamp=row["timestamp"], expires_at=row["expires_at"])

    def set(self, key: str, data: Any, ttl: float) -> CacheEntry:
        """Store an entry expiring ttl seconds from now."""
        now = time.time()
        entry = CacheEntry(data=data, timestamp=now, expires_at=now + ttl)
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (key, data, timestamp, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (self._full_key(key), json.dumps(data), entry.timestamp, entry.expires_at),
            )
        return entry

    def delete(self, key: str) -> bool:
        """Delete one entry.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM cache_entries WHERE key = ?", (self._full_key(key),)
            )
            return cursor.rowcount > 0

    def clear(self) -> int:
        """Delete every entry under this store's prefix.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM cache_entries WHERE key LIKE ? ESCAPE '\\'",
                (self._prefix.replace("_", "\\_").replace("%", "\\%") + "%",),
            )
            return cursor.rowcount


class FetchError(str, Enum):
    """Why a fetch produced no data."""

    OFFLINE = "offline"
    FETCH_FAILED = "fetch_failed"


@dataclass
class FetchResult:
    """Result of RequestCache.fetch().

    Exactly one of data/error is meaningful: when error is None the
    fetch succeeded, from network or from cache.
    """

    data: Any = None
    from_cache: bool = False
    error: FetchError | None = None

    @property
    def ok(self) -> bool:
        """Check if data was obtained."""
        return self.error is None

    @property
    def message(self) -> str:
        """Human-readable error message."""
        if self.error == FetchError.OFFLINE:
            return "You are offline"
        if self.error == FetchError.FETCH_FAILED:
            return "Failed to fetch data"
        return ""


class RequestCache:
    """Network-first reader with cache fallback.

    Usage:
        cache = RequestCache(CacheStore(path), monitor)
        result = cache.fetch("https://api.example.com/news", cache_key="news")
        if result.ok:
            render(result.data, stale=result.from_cache)
    """

    def __init__(
        self,
        store: CacheStore,
        monitor: ConnectivityMonitor,
        client: httpx.Client | None = None,
        default_ttl: float = DEFAULT_CACHE_TTL,
    ) -> None:
        """Initialize the request cache.

        Args:
            store: Cache storage.
            monitor: Connectivity monitor consulted before each fetch.
            client: HTTP client used for network reads.
            default_ttl: TTL in seconds used when fetch() gets none.
        """
        self._store = store
        self._monitor = monitor
        self._client = client or httpx.Client(timeout=30.0, follow_redirects=True)
        self._default_ttl = default_ttl

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def fetch(
        self,
        url: str,
        options: dict[str, Any] | None = None,
        cache_key: str | None = None,
        ttl: float | None = None,
    ) -> FetchResult:
        """Fetch JSON from url, falling back to the cache.

        Args:
            url: URL to GET (or to request with options["method"]).
            options: Extra httpx request arguments (method, headers, params...).
            cache_key: Logical cache name; no caching when None.
            ttl: Entry lifetime in seconds (defaults to 24h).

        Returns:
            FetchResult, never raises.
        """
        offline = self._monitor.is_offline
        ttl = self._default_ttl if ttl is None else ttl

        if not offline:
            data = self._fetch_network(url, options or {})
            if data is not None:
                if cache_key:
                    self._store_entry(cache_key, data, ttl)
                return FetchResult(data=data, from_cache=False)

        if cache_key:
            entry = self._cached_entry(cache_key)
            if entry is not None:
                logger.debug("Serving from cache: %s", cache_key)
                return FetchResult(data=entry.data, from_cache=True)

        return FetchResult(error=FetchError.OFFLINE if offline else FetchError.FETCH_FAILED)

    def _store_entry(self, cache_key: str, data: Any, ttl: float) -> None:
        try:
            self._store.set(cache_key, data, ttl)
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning("Failed to cache %s: %s", cache_key, e)

    def _cached_entry(self, cache_key: str) -> CacheEntry | None:
        """Get a fresh entry, purging a stale one."""
        try:
            entry = self._store.get(cache_key)
            if entry is None or entry.is_fresh():
                return entry
            logger.debug("Purging stale cache entry: %s", cache_key)
            self._store.delete(cache_key)
        except sqlite3.Error as e:
            logger.warning("Failed to read cache entry %s: %s", cache_key, e)
        return None

    def _fetch_network(self, url: str, options: dict[str, Any]) -> Any | None:
        request_args = dict(options)
        method = request_args.pop("method", "GET")
        try:
            response = self._client.request(method, url, **request_args)
            if response.is_success:
                return response.json()
            logger.warning("Network fetch failed: %s (HTTP %d)", url, response.status_code)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Network fetch failed: %s (%s)", url, e)
        except TypeError as e:
            logger.error("Invalid request options for %s: %s", url, e)
        return None

    def is_cached(self, cache_key: str) -> bool:
        """Check if a fresh entry exists for cache_key."""
        entry = self._store.get(cache_key)
        return entry is not None and entry.is_fresh()

    def clear_cache(self, cache_key: str) -> None:
        """Invalidate one entry."""
        self._store.delete(cache_key)

    def clear_all_cache(self) -> int:
        """Invalidate all cached entries.

        Returns:
            Number of entries removed.
        """
        count = self._store.clear()
        logger.info("Cleared %d cache entries", count)
        return count
