"""Cache port with in-memory and SQLite backends.

Values must be JSON-serializable.  A missing or expired key is never an
error: ``get`` simply returns ``None``.
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Protocol

from .constants import CACHE_DB_PATH, CACHE_PREFIX, DEFAULT_CACHE_TTL

logger = logging.getLogger(__name__)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


class CachePort(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_CACHE_TTL) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryCache:
    """Process-local cache, mainly for tests and single-process runs."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_CACHE_TTL) -> None:
        with self._lock:
            self._entries[key] = (copy.deepcopy(value), self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


class SQLiteCache:
    """Persistent cache so progress survives across CLI invocations."""

    def __init__(self, db_path: Path | None = None, prefix: str = CACHE_PREFIX) -> None:
        self.db_path = Path(db_path or CACHE_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.prefix = prefix
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.executescript(_CREATE_TABLES_SQL)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Any | None:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value_json, expires_at FROM cache_entries WHERE key = ?",
                    (self._key(key),),
                ).fetchone()
        except sqlite3.Error as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None

        if row is None:
            return None
        value_json, expires_at = row
        if expires_at <= time.time():
            self.delete(key)
            return None
        return json.loads(value_json)

    def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_CACHE_TTL) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value_json, expires_at) "
                    "VALUES (?, ?, ?)",
                    (self._key(key), json.dumps(value), time.time() + ttl_seconds),
                )
        except sqlite3.Error as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)

    def delete(self, key: str) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "DELETE FROM cache_entries WHERE key = ?", (self._key(key),)
                )
        except sqlite3.Error as exc:
            logger.warning("Cache delete failed for %s: %s", key, exc)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM cache_entries")

    def close(self) -> None:
        self._conn.close()

    # --- context manager ---

    def __enter__(self) -> SQLiteCache:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()
