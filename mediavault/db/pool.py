"""Bounded pool of SQLite connections shared by every component."""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

from mediavault.db.schema import connect, migrate
from mediavault.metrics import Histogram

LOGGER = logging.getLogger(__name__)


class PoolTimeout(RuntimeError):
    """Raised when no connection becomes available within the timeout."""


class PoolClosed(RuntimeError):
    """Raised when a connection is requested after :meth:`ConnectionPool.close`."""


class ConnectionPool:
    """Hand out at most ``size`` connections to one database file.

    Connections are opened lazily and reused. Every borrower holds its
    connection exclusively until the context manager exits, so a connection
    is never shared by two threads at the same time.
    """

    def __init__(self, db_path: Path | str, *, size: int = 8, timeout: float = 10.0) -> None:
        self.db_path = Path(db_path)
        self.size = max(1, int(size))
        self.timeout = float(timeout)
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._lock = threading.Lock()
        self._open = 0
        self._in_use = 0
        self._closed = False
        self._wait_ms = Histogram()
        self._waits = 0
        self._timeouts = 0

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            migrate(conn)

    def _acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise PoolClosed("connection pool is closed")
        started = time.perf_counter()
        conn: sqlite3.Connection | None = None
        try:
            conn = self._idle.get_nowait()
        except queue.Empty:
            with self._lock:
                if self._open < self.size:
                    self._open += 1
                    opening = True
                else:
                    opening = False
            if opening:
                try:
                    conn = connect(self.db_path)
                except sqlite3.Error:
                    with self._lock:
                        self._open -= 1
                    raise
            else:
                try:
                    conn = self._idle.get(timeout=self.timeout)
                except queue.Empty as exc:
                    with self._lock:
                        self._timeouts += 1
                    raise PoolTimeout(
                        f"no database connection available after {self.timeout:.1f}s"
                    ) from exc
        waited_ms = (time.perf_counter() - started) * 1000
        with self._lock:
            self._in_use += 1
            self._waits += 1
            self._wait_ms.add(waited_ms)
        return conn

    def _release(self, conn: sqlite3.Connection) -> None:
        with self._lock:
            self._in_use -= 1
        if conn.in_transaction:
            conn.rollback()
        if self._closed:
            conn.close()
            with self._lock:
                self._open -= 1
            return
        self._idle.put(conn)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn)

    @contextmanager
    def transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one transaction, committed on success.

        ``immediate`` takes the write lock up front, which keeps
        read-then-write sequences from interleaving with other writers.
        """

        with self.connection() as conn:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            try:
                with conn:
                    yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.rollback()
                raise

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection pinned to one consistent read snapshot."""

        with self.connection() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.rollback()

    def ping(self) -> bool:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1").fetchone()
        except (sqlite3.Error, PoolTimeout, PoolClosed):
            LOGGER.warning("store ping failed", exc_info=True)
            return False
        return True

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "open": self._open,
                "in_use": self._in_use,
                "idle": self._idle.qsize(),
                "max_open": self.size,
                "wait_count": self._waits,
                "wait_timeouts": self._timeouts,
                "wait_duration_ms": self._wait_ms.percentiles(),
            }

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            conn.close()
            with self._lock:
                self._open -= 1


__all__ = ["ConnectionPool", "PoolClosed", "PoolTimeout"]
