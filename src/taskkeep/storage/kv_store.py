# src/taskkeep/storage/kv_store.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
from pathlib import Path

from ..core.errors import QuotaExceededError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY_BYTES = 5 * 1024 * 1024


def entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class MemoryKeyValueStore:
    """In-process host store with the same capacity semantics as the SQLite one."""

    def __init__(self, capacity_bytes: int = DEFAULT_CAPACITY_BYTES) -> None:
        self.capacity_bytes = int(capacity_bytes)
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        current = self.usage_bytes()
        old = self._items.get(key)
        if old is not None:
            current -= entry_size(key, old)
        required = current + entry_size(key, value)
        if required > self.capacity_bytes:
            raise QuotaExceededError(key, required, self.capacity_bytes)
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._items)

    def usage_bytes(self) -> int:
        return sum(entry_size(k, v) for k, v in self._items.items())


class SQLiteKeyValueStore:
    """
    SQLite-backed host store.

    One table of (key, value, size) rows. The capacity check and the write happen
    in the same transaction, so a refused write leaves the previous value intact.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "taskkeep.sqlite3", capacity_bytes: int = DEFAULT_CAPACITY_BYTES) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.capacity_bytes = int(capacity_bytes)
        self._ensure_schema()
        try:
            used = self.usage_bytes()
        except Exception:
            used = -1
        logger.info(
            "KeyValueStore ready db=%s used=%s capacity=%s", self._db_path, used, self.capacity_bytes
        )

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    size INTEGER NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    # ---- public API ----

    def get_item(self, key: str) -> str | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            return None if row is None else str(row["value"])
        finally:
            conn.close()

    def set_item(self, key: str, value: str) -> None:
        size = entry_size(key, value)
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            (others,) = cur.execute(
                "SELECT COALESCE(SUM(size), 0) FROM kv WHERE key != ?", (key,)
            ).fetchone()
            required = int(others) + size
            if required > self.capacity_bytes:
                conn.rollback()
                raise QuotaExceededError(key, required, self.capacity_bytes)
            cur.execute(
                """
                INSERT INTO kv(key, value, size) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, size = excluded.size
                """,
                (key, value, size),
            )
            conn.commit()
            logger.debug("kv set key=%s bytes=%s total=%s", key, size, required)
        finally:
            conn.close()

    def remove_item(self, key: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self) -> list[str]:
        conn = self._get_conn()
        try:
            return [str(r["key"]) for r in conn.execute("SELECT key FROM kv ORDER BY key")]
        finally:
            conn.close()

    def usage_bytes(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COALESCE(SUM(size), 0) FROM kv").fetchone()
            return int(n)
        finally:
            conn.close()
