from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
from typing import List, Optional

from ...errors import PersistenceError

logger = logging.getLogger(__name__)

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLiteStore:
    """SQLite-backed key -> JSON-string store.

    Brief:
      A small key/value table used to persist the fix cache and host
      statistics documents across sessions. It owns connection management,
      directory creation and journaling so callers only see get/set.

    Inputs (constructor):
      - db_path: Path to sqlite3 DB file. Use ':memory:' for in-memory.
      - table: Table name holding the documents (default 'detour_kv').
      - journal_mode: SQLite journal mode string (default 'WAL'). Best-effort.
      - create_dir: When True, create parent directory for db_path if needed.

    Outputs:
      - SQLiteStore instance.

    Notes:
      - Failures are raised as PersistenceError; the persistence manager
        decides whether to degrade to in-memory operation.
      - All DB operations are synchronized with an RLock.

    Example:
      >>> store = SQLiteStore(":memory:")
      >>> store.set("detour:cache", '{"version": 3}')
      >>> store.get("detour:cache")
      '{"version": 3}'
    """

    def __init__(
        self,
        db_path: str,
        *,
        table: str = "detour_kv",
        journal_mode: str = "WAL",
        create_dir: bool = True,
    ) -> None:
        """Brief: Open the database and ensure the table exists.

        Inputs:
          - db_path: sqlite file path or ':memory:'.
          - table: table name (letters, digits and underscores).
          - journal_mode: sqlite journal mode.
          - create_dir: create parent directory for on-disk db_path.

        Outputs:
          - None.
        """

        if not _TABLE_RE.match(str(table)):
            raise ValueError(f"invalid table name {table!r}")
        self.db_path = str(db_path)
        self.table = str(table)
        self.journal_mode = str(journal_mode or "WAL")
        self.create_dir = bool(create_dir)

        self._lock = threading.RLock()
        self._conn = self._init_connection()

    def _init_connection(self) -> sqlite3.Connection:
        """Brief: Create sqlite connection and initialize schema.

        Inputs:
          - None.

        Outputs:
          - sqlite3.Connection: Open sqlite connection with schema ensured.
        """

        db_path = self.db_path
        if db_path != ":memory:":
            db_path = os.path.abspath(os.path.expanduser(db_path))
            self.db_path = db_path

            if self.create_dir:
                dir_path = os.path.dirname(db_path)
                if dir_path:
                    os.makedirs(dir_path, exist_ok=True)

        try:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open {self.db_path}: {exc}") from exc
        try:
            conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        except sqlite3.Error:
            # Some environments restrict PRAGMAs.
            pass

        conn.execute(
            f"CREATE TABLE IF NOT EXISTS {self.table} ("
            "key TEXT PRIMARY KEY, "
            "value TEXT NOT NULL"
            ")"
        )
        conn.commit()
        return conn

    def get(self, key: str) -> Optional[str]:
        """Brief: Stored value for key, or None."""

        with self._lock:
            try:
                row = self._conn.execute(
                    f"SELECT value FROM {self.table} WHERE key=?", (str(key),)
                ).fetchone()
            except sqlite3.Error as exc:
                raise PersistenceError(f"read of {key!r} failed: {exc}") from exc
        return None if row is None else str(row[0])

    def set(self, key: str, value: str) -> None:
        """Brief: Insert or replace the value stored under key."""

        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        f"INSERT OR REPLACE INTO {self.table} (key, value) VALUES (?, ?)",
                        (str(key), str(value)),
                    )
            except sqlite3.Error as exc:
                raise PersistenceError(f"write of {key!r} failed: {exc}") from exc

    def keys(self) -> List[str]:
        with self._lock:
            rows = self._conn.execute(f"SELECT key FROM {self.table} ORDER BY key").fetchall()
        return [str(r[0]) for r in rows]

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error:  # pragma: no cover
                logger.debug("SQLiteStore close failed", exc_info=True)
