"""L2: durable offline image store backed by SQLite.

Entries are data URLs keyed by source identifier.  Thumbnails share the same
table but live in their own namespace (keys prefixed with ``thumb:``), so
entry caps and eviction are accounted per namespace.

The store is an optimisation, never a source of truth: backend failures are
logged and reported to callers as a plain miss.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from repic.config import (
    OFFLINE_EVICTION_MARGIN,
    OFFLINE_MAX_AGE_DAYS,
    OFFLINE_MAX_ENTRIES,
    OFFLINE_THUMB_EVICTION_MARGIN,
    OFFLINE_THUMB_MAX_ENTRIES,
    THUMB_PREFIX,
)
from repic.errors import CacheError
from repic.infrastructure.db.pool import ConnectionPool

LOGGER = logging.getLogger(__name__)

FULL_NAMESPACE = "full"
THUMB_NAMESPACE = "thumb"


def namespace_for(key: str) -> str:
    return THUMB_NAMESPACE if key.startswith(THUMB_PREFIX) else FULL_NAMESPACE


@dataclass(frozen=True)
class CacheEntry:
    """One stored image.  Overwriting a key stores a new entry."""

    key: str
    payload: str
    stored_at: float


@dataclass(frozen=True)
class NamespacePolicy:
    max_entries: int
    eviction_margin: int


DEFAULT_POLICIES: dict[str, NamespacePolicy] = {
    FULL_NAMESPACE: NamespacePolicy(OFFLINE_MAX_ENTRIES, OFFLINE_EVICTION_MARGIN),
    THUMB_NAMESPACE: NamespacePolicy(OFFLINE_THUMB_MAX_ENTRIES, OFFLINE_THUMB_EVICTION_MARGIN),
}


class OfflineStoreBackend(Protocol):
    """Async key-value backend with a recency index per namespace.

    Implementations raise :class:`CacheError` on I/O failure.
    """

    async def get(self, key: str) -> CacheEntry | None: ...

    async def put(self, entry: CacheEntry, namespace: str) -> None: ...

    async def count(self, namespace: str | None = None) -> int: ...

    async def delete_oldest(self, namespace: str, limit: int) -> int: ...

    async def clear(self) -> None: ...

    async def close(self) -> None: ...


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS images (
        key TEXT PRIMARY KEY,
        namespace TEXT NOT NULL,
        payload TEXT NOT NULL,
        stored_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_images_recency ON images(namespace, stored_at)",
)


def _apply_schema(conn: sqlite3.Connection) -> None:
    for statement in _SCHEMA:
        conn.execute(statement)


class SQLiteOfflineBackend:
    """:class:`OfflineStoreBackend` on a single SQLite file.

    Every call runs in a worker thread through ``asyncio.to_thread`` so the
    event loop never blocks on disk I/O.
    """

    def __init__(self, db_path: Path, *, pool_size: int = 2, timeout: float = 10.0):
        self._pool = ConnectionPool(db_path, pool_size, timeout, initializer=_apply_schema)

    @property
    def db_path(self) -> Path:
        return self._pool.db_path

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> CacheEntry | None:
        return await self._run(self._get_sync, key)

    async def put(self, entry: CacheEntry, namespace: str) -> None:
        await self._run(self._put_sync, entry, namespace)

    async def count(self, namespace: str | None = None) -> int:
        return await self._run(self._count_sync, namespace)

    async def delete_oldest(self, namespace: str, limit: int) -> int:
        if limit <= 0:
            return 0
        return await self._run(self._delete_oldest_sync, namespace, limit)

    async def clear(self) -> None:
        await self._run(self._clear_sync)

    async def close(self) -> None:
        await asyncio.to_thread(self._pool.close_all)

    # ------------------------------------------------------------------
    # Worker-thread helpers
    # ------------------------------------------------------------------

    async def _run(self, func: Callable, *args):
        try:
            return await asyncio.to_thread(self._guarded, func, *args)
        except CacheError:
            raise
        except (sqlite3.Error, OSError) as exc:
            raise CacheError(f"{func.__name__.strip('_')}: {exc}") from exc

    def _guarded(self, func: Callable, *args):
        with self._pool.connection() as conn:
            return func(conn, *args)

    @staticmethod
    def _get_sync(conn: sqlite3.Connection, key: str) -> CacheEntry | None:
        row = conn.execute(
            "SELECT key, payload, stored_at FROM images WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return CacheEntry(key=row["key"], payload=row["payload"], stored_at=row["stored_at"])

    @staticmethod
    def _put_sync(conn: sqlite3.Connection, entry: CacheEntry, namespace: str) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO images (key, namespace, payload, stored_at) "
            "VALUES (?, ?, ?, ?)",
            (entry.key, namespace, entry.payload, entry.stored_at),
        )

    @staticmethod
    def _count_sync(conn: sqlite3.Connection, namespace: str | None) -> int:
        if namespace is None:
            row = conn.execute("SELECT COUNT(*) FROM images").fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(*) FROM images WHERE namespace = ?", (namespace,)
            ).fetchone()
        return int(row[0])

    @staticmethod
    def _delete_oldest_sync(conn: sqlite3.Connection, namespace: str, limit: int) -> int:
        # Walk the recency index oldest-first and delete as we go.
        cursor = conn.execute(
            "SELECT key FROM images WHERE namespace = ? ORDER BY stored_at ASC LIMIT ?",
            (namespace, limit),
        )
        keys = [(row["key"],) for row in cursor.fetchall()]
        conn.executemany("DELETE FROM images WHERE key = ?", keys)
        return len(keys)

    @staticmethod
    def _clear_sync(conn: sqlite3.Connection) -> None:
        conn.execute("DELETE FROM images")


class OfflineImageStore:
    """Durable cache tier with lazy age checks and batched eviction."""

    def __init__(
        self,
        backend: OfflineStoreBackend,
        *,
        max_age_sec: float = OFFLINE_MAX_AGE_DAYS * 24 * 60 * 60,
        policies: dict[str, NamespacePolicy] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._max_age_sec = max_age_sec
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._clock = clock

    @property
    def max_age_sec(self) -> float:
        return self._max_age_sec

    async def get(self, key: str) -> str | None:
        """Return the stored payload, or *None* if missing or expired.

        Expired entries stay on disk until an eviction pass removes them.
        """
        entry = await self.get_entry(key)
        if entry is None:
            return None
        age = self._clock() - entry.stored_at
        if age >= self._max_age_sec:
            LOGGER.debug("Offline entry for %s expired (age %.0fs)", key, age)
            return None
        return entry.payload

    async def get_entry(self, key: str) -> CacheEntry | None:
        try:
            return await self._backend.get(key)
        except CacheError as exc:
            LOGGER.warning("Offline store read failed for %s: %s", key, exc)
            return None

    async def put(self, key: str, payload: str) -> bool:
        """Upsert *payload* and trim the key's namespace if it grew too large.

        Returns *False* when the backend failed; the failure is only logged.
        """
        namespace = namespace_for(key)
        entry = CacheEntry(key=key, payload=payload, stored_at=self._clock())
        try:
            await self._backend.put(entry, namespace)
            await self._evict_if_needed(namespace)
        except CacheError as exc:
            LOGGER.warning("Offline store write failed for %s: %s", key, exc)
            return False
        return True

    async def _evict_if_needed(self, namespace: str) -> None:
        policy = self._policies.get(namespace)
        if policy is None:
            return
        count = await self._backend.count(namespace)
        if count <= policy.max_entries:
            return
        # Overshoot by the margin so the next few inserts don't trigger
        # another pass each.
        excess = count - policy.max_entries + policy.eviction_margin
        deleted = await self._backend.delete_oldest(namespace, excess)
        LOGGER.debug("Evicted %d offline %s entries (%d stored)", deleted, namespace, count)

    async def count(self, namespace: str | None = None) -> int:
        try:
            return await self._backend.count(namespace)
        except CacheError as exc:
            LOGGER.warning("Offline store count failed: %s", exc)
            return 0

    async def stats(self) -> dict[str, int]:
        return {namespace: await self.count(namespace) for namespace in self._policies}

    async def clear(self) -> None:
        try:
            await self._backend.clear()
        except CacheError as exc:
            LOGGER.warning("Offline store clear failed: %s", exc)

    async def close(self) -> None:
        try:
            await self._backend.close()
        except CacheError as exc:
            LOGGER.warning("Offline store close failed: %s", exc)
