from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from quotelink.domain.errors import StoreUnavailableError
from quotelink.store.migrations import apply_schema

DEFAULT_TIMEOUT_SECONDS = 5.0


class SqliteSession:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def execute(self, query: str, params: Iterable[Any] | None = None) -> int:
        cur = self._conn.execute(query, params or [])
        return cur.rowcount

    def fetch_all(self, query: str, params: Iterable[Any] | None = None) -> list[sqlite3.Row]:
        cur = self._conn.execute(query, params or [])
        return cur.fetchall()

    def fetch_one(self, query: str, params: Iterable[Any] | None = None) -> sqlite3.Row | None:
        cur = self._conn.execute(query, params or [])
        return cur.fetchone()


class SqliteStore:
    def __init__(self, db_path: Path, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout

    @contextmanager
    def connect(self, immediate: bool = False):
        """Open a connection whose work commits on success and rolls back on error.

        With ``immediate`` the write lock is taken up front, so every read made
        inside the block sees the state the block's writes will be applied to.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        except (OSError, sqlite3.OperationalError) as exc:
            raise StoreUnavailableError(f"Cannot open store at {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON;")
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            raise StoreUnavailableError(f"Store error at {self.db_path}: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def session(self, immediate: bool = False) -> SqliteSession:
        with self.connect(immediate=immediate) as conn:
            yield SqliteSession(conn)

    def apply_schema(self, schema_path: Path) -> None:
        with self.connect() as conn:
            apply_schema(conn, schema_path)

    def execute(self, query: str, params: Iterable[Any] | None = None) -> int:
        with self.connect() as conn:
            cur = conn.execute(query, params or [])
            return cur.rowcount

    def fetch_all(self, query: str, params: Iterable[Any] | None = None) -> list[sqlite3.Row]:
        with self.connect() as conn:
            cur = conn.execute(query, params or [])
            return cur.fetchall()

    def fetch_one(self, query: str, params: Iterable[Any] | None = None) -> sqlite3.Row | None:
        with self.connect() as conn:
            cur = conn.execute(query, params or [])
            return cur.fetchone()
