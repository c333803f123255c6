"""SQLite connection factory with WAL mode and foreign keys."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from secwatch.errors import RepositoryError


class Database:
    """Thread-safe SQLite connection manager.

    Uses WAL mode for concurrent readers and a threading lock for writes.
    Each thread gets its own connection via thread-local storage.
    Every ``sqlite3.Error`` surfaces as ``RepositoryError``.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self._db_path, check_same_thread=False, isolation_level=None,
                )
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
                conn.execute("PRAGMA busy_timeout=5000")
            except sqlite3.Error as exc:
                raise RepositoryError(f"Cannot open database {self._db_path}: {exc}") from exc
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        try:
            return self._get_conn().execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise RepositoryError(str(exc)) from exc

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._get_conn().execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise RepositoryError(str(exc)) from exc

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; rolled back entirely on any error.

        ``sqlite3.IntegrityError`` is re-raised untouched so callers can map
        constraint violations to domain errors.
        """
        with self._write_lock:
            conn = self._get_conn()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise RepositoryError(str(exc)) from exc
            try:
                yield conn
            except BaseException as exc:
                conn.execute("ROLLBACK")
                if isinstance(exc, sqlite3.Error) and not isinstance(exc, sqlite3.IntegrityError):
                    raise RepositoryError(str(exc)) from exc
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as exc:
                    conn.execute("ROLLBACK")
                    raise RepositoryError(str(exc)) from exc

    def write(self, sql: str, params: tuple = ()) -> int:
        """Execute a single write statement. Returns the affected row count."""
        with self.transaction() as conn:
            return conn.execute(sql, params).rowcount

    def write_script(self, sql: str) -> None:
        """Execute a multi-statement SQL script."""
        with self._write_lock:
            try:
                self._get_conn().executescript(sql)
            except sqlite3.Error as exc:
                raise RepositoryError(str(exc)) from exc

    def close(self) -> None:
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
