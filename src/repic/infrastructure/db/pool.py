"""SQLite connections shared by the offline store's worker threads."""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from repic.errors import CacheError, ConnectionPoolExhausted

LOGGER = logging.getLogger(__name__)

Initializer = Callable[[sqlite3.Connection], None]


class ConnectionPool:
    """Bounded set of SQLite connections for ``asyncio.to_thread`` workers.

    Connections are opened lazily with ``check_same_thread=False`` and WAL
    journaling, then handed to one worker at a time.  ``initializer`` runs on
    every new connection before first use (schema creation, pragmas).

    After :meth:`close_all` the pool refuses new work with
    :class:`CacheError`; connections still checked out are closed when they
    come back.
    """

    def __init__(
        self,
        db_path: Path,
        pool_size: int = 2,
        timeout: float = 10.0,
        *,
        initializer: Optional[Initializer] = None,
    ):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        self._db_path = Path(db_path)
        self._pool_size = pool_size
        self._timeout = timeout
        self._initializer = initializer
        self._idle: queue.LifoQueue = queue.LifoQueue(maxsize=pool_size)
        self._created = 0
        self._closed = False
        self._lock = threading.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def closed(self) -> bool:
        return self._closed

    def _open(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=self._timeout)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            if self._initializer is not None:
                self._initializer(conn)
                conn.commit()
        except Exception:
            conn.close()
            raise
        return conn

    def _acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise CacheError(f"connection pool for {self._db_path} is closed")
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass

        with self._lock:
            may_open = self._created < self._pool_size
            if may_open:
                self._created += 1
        if may_open:
            try:
                return self._open()
            except Exception:
                with self._lock:
                    self._created -= 1
                raise

        try:
            return self._idle.get(timeout=self._timeout)
        except queue.Empty:
            raise ConnectionPoolExhausted(
                f"no SQLite connection free within {self._timeout}s (pool_size={self._pool_size})"
            ) from None

    def _release(self, conn: sqlite3.Connection) -> None:
        if self._closed:
            self._discard(conn)
            return
        try:
            self._idle.put_nowait(conn)
        except queue.Full:
            self._discard(conn)

    def _discard(self, conn: sqlite3.Connection) -> None:
        conn.close()
        with self._lock:
            self._created = max(0, self._created - 1)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection; commit on success, roll back on error."""
        conn = self._acquire()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._release(conn)

    def close_all(self) -> None:
        self._closed = True
        closed = 0
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            self._discard(conn)
            closed += 1
        LOGGER.debug("Closed %d pooled connection(s) to %s", closed, self._db_path)
