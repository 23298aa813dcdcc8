"""Database — SQLite persistence layer.

Manages the connection, runs migrations, and provides the transaction and
bounded-retry primitives the ledger, audit trail and recorders build on.

One connection is shared by every thread and guarded by a re-entrant lock.
Writes run inside ``BEGIN IMMEDIATE`` transactions; a transaction opened
while another is in progress on the same thread joins the outer one.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tourney.config import StorageConfig
from tourney.errors import PersistenceFailure
from tourney.storage.migrations import run_migrations
from tourney.observability.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class Database:
    """SQLite database for the engine."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    def connect(self) -> None:
        """Open database connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            path,
            timeout=self._config.busy_timeout_secs,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @property
    def in_transaction(self) -> bool:
        """True when the calling thread is inside ``transaction()``."""
        with self._lock:
            return self._depth > 0

    # ── Transactions ─────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection lock for an all-or-nothing unit of work."""
        with self._lock:
            conn = self.conn
            if self._depth:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._depth = 0

    def write(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` in a transaction, retrying transient storage errors.

        Inside an enclosing transaction ``fn`` runs once and errors go to
        the outer caller, which owns the retry.
        """
        if self.in_transaction:
            with self.transaction() as conn:
                return fn(conn)
        return self._with_retry("write", lambda: self._run_tx(fn))

    def _run_tx(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self.transaction() as conn:
            return fn(conn)

    # ── Reads ────────────────────────────────────────────────────────

    def query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        def _q() -> list[sqlite3.Row]:
            with self._lock:
                return self.conn.execute(sql, params).fetchall()
        return self._with_retry("query", _q)

    def query_one(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    # ── Retry ────────────────────────────────────────────────────────

    def _with_retry(self, op: str, fn: Callable[[], T]) -> T:
        retryer = Retrying(
            stop=stop_after_attempt(max(1, self._config.max_retries)),
            wait=wait_exponential(multiplier=self._config.retry_backoff_secs, max=2.0),
            retry=retry_if_exception_type(sqlite3.OperationalError),
            reraise=True,
        )
        try:
            for attempt in retryer:
                with attempt:
                    return fn()
        except sqlite3.OperationalError as e:
            log.error("database.unavailable", op=op, error=str(e))
            raise PersistenceFailure(f"storage {op} failed: {e}", op=op) from e
        raise PersistenceFailure(f"storage {op} failed", op=op)  # pragma: no cover
