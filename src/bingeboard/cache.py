"""
Key/value cache stores with per-entry TTL.

Both stores satisfy the same small contract used by the aggregator and the
embedding generator:

    get(key) -> value | None
    set(key, value, ttl)

Writes always replace the whole entry, so a reader sees either the previous
value or the new one and never a partially updated object.
"""
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Hashable, Protocol

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    def get(self, key: Hashable) -> Any | None: ...

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None: ...


class TTLCache:
    """
    In-process cache with optional per-entry expiry.

    Values are stored by reference: a hit returns the exact object that was
    stored. `ttl=None` keeps an entry until it is deleted or the cache is
    cleared. With `max_entries` set, the oldest writes are evicted first.
    """

    def __init__(
        self,
        default_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int | None = None,
    ):
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Hashable, tuple[float | None, Any]] = {}

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._entries[key]
                logger.debug(f"Cache entry expired: {key}")
                return None
            return value

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (expires_at, value)
            if self.max_entries is not None and len(self._entries) > self.max_entries:
                self._evict()

    def _evict(self) -> None:
        """Drop expired entries, then the oldest writes, until under `max_entries`. Caller holds the lock."""
        now = self._clock()
        for key in [k for k, (exp, _) in self._entries.items() if exp is not None and now >= exp]:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            del self._entries[next(iter(self._entries))]

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, (expires_at, _) in self._entries.items()
                if expires_at is not None and now >= expires_at
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None


class SQLiteCache:
    """
    Persistent TTL cache backed by a single SQLite table.

    Values are serialized with `encode` (default: json.dumps) and rebuilt with
    `decode` on read, so a hit returns an equal object rather than the same
    one. Expiry uses wall-clock time so entries survive process restarts.
    """

    blocking = True  # disk I/O; async callers should run it off the event loop

    def __init__(
        self,
        db_path: str | Path,
        default_ttl: float | None = None,
        encode: Callable[[Any], str] = json.dumps,
        decode: Callable[[str], Any] = json.loads,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path)
        self.default_ttl = default_ttl
        self._encode = encode
        self._decode = decode
        self._clock = clock
        self._lock = threading.Lock()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at)")

    def get(self, key: Hashable) -> Any | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT value, expires_at FROM cache_entries WHERE key = ?", (str(key),)
            ).fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at is not None and self._clock() >= expires_at:
                conn.execute("DELETE FROM cache_entries WHERE key = ?", (str(key),))
                logger.debug(f"Cache entry expired: {key}")
                return None

        try:
            return self._decode(value)
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning(f"Discarding undecodable cache entry {key}: {exc}")
            self.delete(key)
            return None

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        payload = self._encode(value)
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (str(key), payload, expires_at),
            )

    def delete(self, key: Hashable) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM cache_entries WHERE key = ?", (str(key),))

    def clear(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM cache_entries")

    def purge_expired(self) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
            return cursor.rowcount

    def __len__(self) -> int:
        with self._lock, self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]
