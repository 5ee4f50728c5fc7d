"""
Cache Store: SQLite-backed TTL cache with tag-based eviction.

Services receive a CacheStore instance through their constructor. Values are
stored as JSON so a cache hit returns exactly what was computed on the miss.
Concurrent misses for the same key simply overwrite each other (last write
wins); all writers compute from the same inputs.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Optional

log = logging.getLogger(__name__)


class CacheStore:
    """
    TTL key/value cache with tags.

    Usage:
        cache = CacheStore(":memory:")
        cache.put("tile:1:5/17/10", payload, ttl=900, tags=["org:1"])
        cache.get("tile:1:5/17/10")
        cache.invalidate_tags(["org:1"])
    """

    DEFAULT_DB_PATH = "map_cache.db"

    def __init__(self, db_path: Optional[str] = None, clock: Callable[[], float] = time.time):
        """
        Args:
            db_path: Path to the SQLite file. ':memory:' keeps the cache in-process.
            clock: Returns the current time in epoch seconds.
        """
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self.clock = clock
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    @contextmanager
    def _transaction(self):
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as e:
            self._conn.rollback()
            log.error(f"Cache transaction failed: {e}")
            raise

    def _init_db(self) -> None:
        with self._lock, self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    cache_key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    expires_at REAL NOT NULL,
                    created_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_tags (
                    tag TEXT NOT NULL,
                    cache_key TEXT NOT NULL,
                    PRIMARY KEY (tag, cache_key)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_cache_tags_key
                ON cache_tags(cache_key)
            """)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on a miss or an expired entry."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value_json, expires_at FROM cache_entries WHERE cache_key = ?",
                (key,)
            ).fetchone()
            if row is None:
                return None
            if row["expires_at"] <= self.clock():
                self._delete_keys([key])
                return None
            return json.loads(row["value_json"])

    def put(self, key: str, value: Any, ttl: int, tags: Iterable[str] = ()) -> None:
        """Store a JSON-serialisable value for ttl seconds."""
        now = self.clock()
        value_json = json.dumps(value, default=str)
        with self._lock, self._transaction() as conn:
            conn.execute("DELETE FROM cache_tags WHERE cache_key = ?", (key,))
            conn.execute(
                """INSERT OR REPLACE INTO cache_entries
                   (cache_key, value_json, expires_at, created_at)
                   VALUES (?, ?, ?, ?)""",
                (key, value_json, now + ttl, now)
            )
            conn.executemany(
                "INSERT OR IGNORE INTO cache_tags (tag, cache_key) VALUES (?, ?)",
                [(tag, key) for tag in set(tags)]
            )

    def forget(self, key: str) -> bool:
        with self._lock:
            return self._delete_keys([key]) > 0

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Evict every entry carrying any of the tags. Returns the number evicted."""
        tags = list(set(tags))
        if not tags:
            return 0
        placeholders = ",".join("?" for _ in tags)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT DISTINCT cache_key FROM cache_tags WHERE tag IN ({placeholders})",
                tags
            ).fetchall()
            removed = self._delete_keys([r["cache_key"] for r in rows])
        log.info(f"Evicted {removed} cache entries for {len(tags)} tag(s)")
        return removed

    def purge_expired(self) -> int:
        with self._lock:
            rows = self._conn.execute(
                "SELECT cache_key FROM cache_entries WHERE expires_at <= ?",
                (self.clock(),)
            ).fetchall()
            return self._delete_keys([r["cache_key"] for r in rows])

    def clear(self) -> None:
        with self._lock, self._transaction() as conn:
            conn.execute("DELETE FROM cache_entries")
            conn.execute("DELETE FROM cache_tags")

    def __len__(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _delete_keys(self, keys: list) -> int:
        if not keys:
            return 0
        with self._transaction() as conn:
            removed = 0
            for key in keys:
                cur = conn.execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))
                removed += cur.rowcount
                conn.execute("DELETE FROM cache_tags WHERE cache_key = ?", (key,))
        return removed
