"""
Namespaced, versioned TTL cache for the acquisition pipeline.

Three independent scopes share one key-value backend:

- user: the whole serialized result for a username (short TTL)
- film-detail: Letterboxd-native details per film URI (long TTL)
- provider-match: TMDB match per (title, year) (long TTL)

Each scope carries its own version token inside the key, so changing the
shape of one scope's values only requires bumping that token.

Caching is strictly best-effort: without a backend every lookup misses,
and backend failures are logged and treated as a miss (get) or ignored
(set).
"""
import json
import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

from . import config
from .scraper import normalize_film_uri
from .tmdb import normalize_title_for_search

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CacheScope(str, Enum):
    USER = "user"
    FILM_DETAIL = "film-detail"
    PROVIDER_MATCH = "provider-match"


def _scope_versions() -> dict[CacheScope, str]:
    return {
        CacheScope.USER: config.USER_CACHE_VERSION,
        CacheScope.FILM_DETAIL: config.FILM_DETAIL_CACHE_VERSION,
        CacheScope.PROVIDER_MATCH: config.PROVIDER_CACHE_VERSION,
    }


def _scope_ttls() -> dict[CacheScope, float]:
    return {
        CacheScope.USER: config.USER_CACHE_TTL,
        CacheScope.FILM_DETAIL: config.FILM_DETAIL_CACHE_TTL,
        CacheScope.PROVIDER_MATCH: config.PROVIDER_CACHE_TTL,
    }


def user_cache_key(username: str) -> str:
    return username.strip().lower()


def film_detail_cache_key(film_uri: str) -> str:
    return normalize_film_uri(film_uri)


def provider_cache_key(title: str, year: str | None) -> str:
    return f"{normalize_title_for_search(title).lower()}|{(year or '').strip()}"


class CacheBackend(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl: float) -> None: ...


class MemoryCacheBackend:
    """
    Per-process LRU backend.

    Expired entries are dropped when read and by a periodic sweep on write;
    past ``max_size`` the least recently used entries are evicted.
    """

    def __init__(self, clock: Clock = time.time, max_size: int | None = None,
                 sweep_interval: float | None = None):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, tuple[str, float]] = OrderedDict()
        self.max_size = max_size if max_size is not None else config.MEMORY_CACHE_MAX_ENTRIES
        self.sweep_interval = sweep_interval if sweep_interval is not None else config.MEMORY_CACHE_SWEEP_INTERVAL
        self._next_sweep = clock() + self.sweep_interval

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: str, value: str, ttl: float) -> None:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._purge_expired_locked(now)
            self._entries[key] = (value, now + ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted least recently used cache entry {evicted}")

    def _purge_expired_locked(self, now: float) -> int:
        doomed = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for k in doomed:
            del self._entries[k]
        self._next_sweep = now + self.sweep_interval
        return len(doomed)

    def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""
        with self._lock:
            return self._purge_expired_locked(self._clock())

    def clear(self, prefix: str = "") -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    def __len__(self) -> int:
        return len(self._entries)


class SQLiteCacheBackend:
    """
    SQLite-backed cache shared by every process pointed at the same file.

    One connection guarded by a lock; WAL keeps readers from blocking
    writers across processes.
    """

    def __init__(self, db_path: str | Path, clock: Clock = time.time):
        self._db_path = Path(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        if str(db_path) != ":memory:":
            self._db_path.parent.mkdir(exist_ok=True, parents=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at);
        """)
        self._conn.commit()

    def get(self, key: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if self._clock() >= expires_at:
            return None
        return value

    def set(self, key: str, value: str, ttl: float) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, self._clock() + ttl),
            )
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete expired rows. Returns the number removed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?", (self._clock(),)
            )
            self._conn.commit()
            return cursor.rowcount

    def clear(self, prefix: str = "") -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM cache_entries WHERE substr(key, 1, ?) = ?", (len(prefix), prefix)
            )
            self._conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class CacheLayer:
    """Scope-aware facade over an optional backend."""

    def __init__(self, backend: CacheBackend | None = None):
        self.backend = backend
        self._versions = _scope_versions()
        self._ttls = _scope_ttls()

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    def make_key(self, scope: CacheScope, raw_key: str) -> str:
        return f"{scope.value}:{self._versions[scope]}:{raw_key}"

    def scope_prefix(self, scope: CacheScope) -> str:
        return f"{scope.value}:"

    def get(self, scope: CacheScope, raw_key: str) -> Any | None:
        if self.backend is None:
            return None
        key = self.make_key(scope, raw_key)
        try:
            raw = self.backend.get(key)
        except Exception as exc:
            logger.warning(f"Cache get failed for {key}: {type(exc).__name__}: {exc}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning(f"Discarding undecodable cache entry {key}: {exc}")
            return None

    def set(self, scope: CacheScope, raw_key: str, value: Any, ttl: float | None = None) -> None:
        if self.backend is None:
            return
        key = self.make_key(scope, raw_key)
        try:
            self.backend.set(key, json.dumps(value), ttl if ttl is not None else self._ttls[scope])
        except Exception as exc:
            logger.warning(f"Cache set failed for {key}: {type(exc).__name__}: {exc}")


def build_cache_backend(kind: str | None = None) -> CacheBackend | None:
    """Create the backend named by LETTERBOXD_STATS_CACHE_BACKEND."""
    kind = (kind or config.CACHE_BACKEND).lower()
    if kind in {"memory", "in-memory", "in_memory"}:
        return MemoryCacheBackend()
    if kind == "sqlite":
        return SQLiteCacheBackend(config.CACHE_DB_PATH)
    if kind in {"none", "off", "disabled", ""}:
        return None
    raise ValueError(f"Unsupported LETTERBOXD_STATS_CACHE_BACKEND='{kind}' (expected memory|sqlite|none)")
