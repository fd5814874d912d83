"""Priority image loader: L1 memory → L2 offline store → network.

Every view asks this loader for image data.  The loader

* answers from the memory LRU when it can,
* falls back to the durable offline store,
* otherwise queues a network fetch, admitting at most ``max_concurrent``
  fetches at once in priority order (FIFO among equal priorities),
* shares one fetch between concurrent requests for the same source, and
* derives thumbnails in a worker thread after each successful load.

``cancel_all`` starts a new *generation*.  Work captured under an older
generation never resolves a caller with data and never writes to the caches;
its callers see :class:`~repic.errors.AbortError` instead.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Awaitable, Coroutine, Iterable

from repic.config import (
    MAX_CONCURRENT,
    MAX_MEMORY_CACHE,
    MAX_THUMB_CACHE,
    PRELOAD_BATCH_SIZE,
    THUMB_PREFIX,
)
from repic.errors import AbortError, DecodeError, InvalidSourceError, NetworkError
from repic.events import EventBus, ImageLoadedEvent, LoadsCancelledEvent
from repic.infrastructure.services.cache_stats import CacheStatsCollector
from repic.infrastructure.services.image_fetcher import ImageFetcher
from repic.infrastructure.services.memory_cache import LRUCache
from repic.infrastructure.services.offline_store import OfflineImageStore
from repic.infrastructure.services.thumbnail_generator import PillowThumbnailGenerator
from repic.utils.sources import is_network_source

LOGGER = logging.getLogger(__name__)


class Priority(IntEnum):
    """Lower values are admitted first."""

    HIGH = 0
    NORMAL = 1
    LOW = 2


@dataclass
class _QueueItem:
    source: str
    priority: Priority
    future: asyncio.Future
    generation: int
    seq: int
    released: bool = False


@dataclass(frozen=True)
class LoaderStats:
    memory_cache_size: int
    memory_cache_max: int
    thumb_cache_size: int
    thumb_cache_max: int
    queue_length: int
    active_count: int
    max_concurrent: int
    pending: int
    generation: int


class ImageLoader:
    """Schedules, deduplicates and caches image loads for one process."""

    def __init__(
        self,
        fetcher: ImageFetcher,
        *,
        store: OfflineImageStore | None = None,
        thumbnailer: PillowThumbnailGenerator | None = None,
        memory_cache: LRUCache[str, str] | None = None,
        thumb_cache: LRUCache[str, str] | None = None,
        max_concurrent: int = MAX_CONCURRENT,
        preload_batch_size: int = PRELOAD_BATCH_SIZE,
        stats: CacheStatsCollector | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._fetcher = fetcher
        self._store = store
        self._thumbnailer = thumbnailer
        self._memory = memory_cache if memory_cache is not None else LRUCache(MAX_MEMORY_CACHE)
        self._thumbs = thumb_cache if thumb_cache is not None else LRUCache(MAX_THUMB_CACHE)
        self._max_concurrent = max_concurrent
        self._preload_batch_size = max(1, preload_batch_size)
        self._stats = stats or CacheStatsCollector()
        self._events = event_bus

        # State
        self._pending: dict[str, asyncio.Future] = {}
        self._queue: list[_QueueItem] = []
        self._inflight: dict[str, tuple[asyncio.Task, _QueueItem]] = {}
        self._thumb_jobs: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._active_count = 0
        self._generation = 0
        self._seq = itertools.count()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def cache_stats(self) -> CacheStatsCollector:
        return self._stats

    @property
    def memory_cache(self) -> LRUCache[str, str]:
        return self._memory

    @property
    def thumb_cache(self) -> LRUCache[str, str]:
        return self._thumbs

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, source: str, priority: Priority = Priority.NORMAL) -> str:
        """Return *source* as a data URL.

        Raises :class:`InvalidSourceError` for non-network sources,
        :class:`NetworkError` when the download fails and
        :class:`AbortError` when the load was cancelled.
        """
        if not is_network_source(source):
            raise InvalidSourceError(f"not a network source: {source!r}")
        priority = Priority(priority)

        cached = self._memory.get(source)
        if cached is not None:
            self._stats.record_hit("memory")
            return cached

        # Registration must happen before the first await so a second
        # request for the same source joins this one.
        future = self._pending.get(source)
        if future is None:
            self._stats.record_miss("memory")
            future = asyncio.get_running_loop().create_future()
            self._pending[source] = future
            # Arrival order is fixed here, before the store lookup.
            seq = next(self._seq)
            self._spawn(self._resolve(source, priority, future, self._generation, seq))
        else:
            self._promote(source, priority)
        return await asyncio.shield(future)

    async def load_thumbnail(self, source: str) -> str | None:
        """Return a thumbnail for *source*, loading the full image if needed.

        Falls back to the full-size payload when no thumbnail could be
        derived (e.g. formats Pillow cannot decode).
        """
        if not is_network_source(source):
            return None

        thumb = self._thumbs.get(source)
        if thumb is not None:
            self._stats.record_hit("thumbnail")
            return thumb
        self._stats.record_miss("thumbnail")

        if self._store is not None:
            generation = self._generation
            stored = await self._store.get(THUMB_PREFIX + source)
            if generation != self._generation:
                raise AbortError(f"thumbnail load of {source} was cancelled")
            if stored is not None:
                self._thumbs.put(source, stored)
                return stored

        full = await self.load(source, Priority.NORMAL)
        job = self._thumb_jobs.get(source)
        if job is not None:
            await asyncio.wait({job})
        return self._thumbs.get(source) or full

    def get_cached(self, source: str) -> str | None:
        return self._memory.get(source)

    def get_cached_thumbnail(self, source: str) -> str | None:
        return self._thumbs.get(source)

    def is_cached(self, source: str) -> bool:
        return self._memory.contains(source)

    def preload_images(self, sources: Iterable[str]) -> int:
        """Queue LOW priority loads for uncached *sources*."""
        scheduled = 0
        for source in sources:
            if is_network_source(source) and not self._memory.contains(source):
                self._spawn(self._quietly(self.load(source, Priority.LOW), source))
                scheduled += 1
        return scheduled

    async def preload_thumbnails(self, sources: Iterable[str]) -> None:
        """Warm the thumbnail cache from the offline store in small batches.

        Sources without a stored thumbnail get a LOW priority full load,
        which derives the thumbnail as a side effect.
        """
        uncached = [s for s in sources if is_network_source(s) and not self._thumbs.contains(s)]
        if not uncached:
            return
        generation = self._generation
        for start in range(0, len(uncached), self._preload_batch_size):
            batch = uncached[start:start + self._preload_batch_size]
            if self._store is not None:
                found = await asyncio.gather(*(self._store.get(THUMB_PREFIX + s) for s in batch))
            else:
                found = [None] * len(batch)
            if generation != self._generation:
                LOGGER.debug("Thumbnail preload abandoned after cancellation")
                return
            misses = []
            for source, thumb in zip(batch, found):
                if thumb is not None:
                    self._thumbs.put(source, thumb)
                else:
                    misses.append(source)
            self.preload_images(misses)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_pending(self, sources: Iterable[str]) -> int:
        """Abort queued and in-flight loads of *sources* only."""
        targets = set(sources)
        if not targets:
            return 0

        kept: list[_QueueItem] = []
        for item in self._queue:
            if item.source in targets:
                self._settle(item.source, item.future, exc=AbortError(f"load of {item.source} was cancelled"))
            else:
                kept.append(item)
        self._queue = kept

        cancelled = 0
        for source in targets:
            running = self._inflight.pop(source, None)
            if running is not None:
                task, item = running
                task.cancel()
                self._settle(source, item.future, exc=AbortError(f"load of {source} was cancelled"))
                self._release(item)
                cancelled += 1
            future = self._pending.get(source)
            if future is not None:
                self._settle(source, future, exc=AbortError(f"load of {source} was cancelled"))
        return cancelled

    def cancel_all(self) -> int:
        """Abort every queued, looking-up and in-flight load.

        Returns the number of outstanding loads that were rejected.
        """
        self._generation += 1
        self._queue.clear()
        for task, _item in self._inflight.values():
            task.cancel()
        self._inflight.clear()

        pending = list(self._pending.items())
        self._pending.clear()
        for source, future in pending:
            if not future.done():
                future.set_exception(AbortError(f"load of {source} was cancelled"))

        # New loads must be admissible immediately; stale tasks no longer
        # give their slot back (see _release).
        self._active_count = 0
        LOGGER.info("Cancelled %d pending load(s); generation is now %d", len(pending), self._generation)
        if self._events is not None:
            self._events.publish(LoadsCancelledEvent(generation=self._generation, dropped=len(pending)))
        return len(pending)

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    def cache_proxy_result(self, source: str, data: str) -> None:
        """Store *data* obtained through a proxy under the original key."""
        if not source or not data:
            return
        self._memory.put(source, data)
        self._persist(source, data, self._generation)

    def clear_memory_cache(self) -> None:
        self._memory.clear()
        self._thumbs.clear()

    def stats(self) -> LoaderStats:
        return LoaderStats(
            memory_cache_size=self._memory.size,
            memory_cache_max=self._memory.max_size,
            thumb_cache_size=self._thumbs.size,
            thumb_cache_max=self._thumbs.max_size,
            queue_length=len(self._queue),
            active_count=self._active_count,
            max_concurrent=self._max_concurrent,
            pending=len(self._pending),
            generation=self._generation,
        )

    async def drain(self) -> None:
        """Wait until background work (fetches, store writes, thumbnails) is done."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding loads, wait for background writes, close I/O."""
        self.cancel_all()
        await self.drain()
        await self._fetcher.aclose()

    # ------------------------------------------------------------------
    # Internals: resolution
    # ------------------------------------------------------------------

    async def _resolve(
        self, source: str, priority: Priority, future: asyncio.Future, generation: int, seq: int
    ) -> None:
        if self._store is not None:
            cached = await self._store.get(source)
            if self._abandoned(source, future, generation):
                return
            if cached is not None:
                self._stats.record_hit("offline")
                self._memory.put(source, cached)
                self._settle(source, future, result=cached)
                self._schedule_thumbnail(source, cached, generation, check_store=True)
                self._publish_loaded(source, "offline")
                return
            self._stats.record_miss("offline")

        self._enqueue(_QueueItem(source, priority, future, generation, seq))
        self._pump()

    def _enqueue(self, item: _QueueItem) -> None:
        bisect.insort_right(self._queue, item, key=lambda queued: (queued.priority, queued.seq))

    def _promote(self, source: str, priority: Priority) -> None:
        for index, item in enumerate(self._queue):
            if item.source != source:
                continue
            if priority < item.priority:
                del self._queue[index]
                item.priority = priority
                self._enqueue(item)
            return

    def _pump(self) -> None:
        while self._active_count < self._max_concurrent and self._queue:
            item = self._queue.pop(0)
            if item.future.done():
                continue
            self._active_count += 1
            task = self._spawn(self._run(item))
            self._inflight[item.source] = (task, item)

    async def _run(self, item: _QueueItem) -> None:
        source, future, generation = item.source, item.future, item.generation
        try:
            data = await self._fetcher.fetch(source)
        except asyncio.CancelledError:
            self._settle(source, future, exc=AbortError(f"load of {source} was cancelled"))
            raise
        except Exception as exc:
            if generation != self._generation:
                self._settle(source, future, exc=AbortError(f"load of {source} was cancelled"))
                return
            if not isinstance(exc, NetworkError):
                exc = NetworkError(f"{type(exc).__name__}: {exc}", url=source)
            LOGGER.debug("Network load failed for %s: %s", source, exc)
            self._settle(source, future, exc=exc)
            return
        finally:
            self._release(item)

        if self._abandoned(source, future, generation):
            LOGGER.debug("Discarding late result for %s", source)
            return
        self._memory.put(source, data)
        self._settle(source, future, result=data)
        self._persist(source, data, generation)
        self._publish_loaded(source, "network")

    def _release(self, item: _QueueItem) -> None:
        if item.released:
            return
        item.released = True
        running = self._inflight.get(item.source)
        if running is not None and running[1] is item:
            del self._inflight[item.source]
        if item.generation == self._generation:
            self._active_count -= 1
            self._pump()

    def _abandoned(self, source: str, future: asyncio.Future, generation: int) -> bool:
        """True when the work behind *future* must stop here."""
        if generation != self._generation:
            self._settle(source, future, exc=AbortError(f"load of {source} was cancelled"))
            return True
        return future.done()

    def _settle(self, source: str, future: asyncio.Future, *, result: str | None = None,
                exc: BaseException | None = None) -> None:
        if self._pending.get(source) is future:
            del self._pending[source]
        if future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)

    # ------------------------------------------------------------------
    # Internals: cache population
    # ------------------------------------------------------------------

    def _persist(self, source: str, data: str, generation: int) -> None:
        if self._store is not None:
            self._spawn(self._store.put(source, data))
        self._schedule_thumbnail(source, data, generation)

    def _schedule_thumbnail(self, source: str, data: str, generation: int, *, check_store: bool = False) -> None:
        if self._thumbnailer is None and self._store is None:
            return
        if source in self._thumb_jobs:
            return
        task = self._spawn(self._thumbnail_job(source, data, generation, check_store))
        self._thumb_jobs[source] = task

        def _done(t: asyncio.Task, key: str = source) -> None:
            if self._thumb_jobs.get(key) is t:
                del self._thumb_jobs[key]

        task.add_done_callback(_done)

    async def _thumbnail_job(self, source: str, data: str, generation: int, check_store: bool) -> None:
        if check_store and self._store is not None:
            stored = await self._store.get(THUMB_PREFIX + source)
            if generation != self._generation:
                return
            if stored is not None:
                self._thumbs.put(source, stored)
                return
        if self._thumbnailer is None:
            return
        try:
            thumb = await asyncio.to_thread(self._thumbnailer.derive, data)
        except DecodeError as exc:
            LOGGER.debug("No thumbnail for %s: %s", source, exc)
            return
        if generation != self._generation:
            LOGGER.debug("Ignoring thumbnail for %s from a cancelled generation", source)
            return
        self._thumbs.put(source, thumb)
        if self._store is not None:
            await self._store.put(THUMB_PREFIX + source, thumb)

    # ------------------------------------------------------------------
    # Internals: task bookkeeping
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Background image task failed", exc_info=exc)

    async def _quietly(self, awaitable: Awaitable[str], source: str) -> None:
        try:
            await awaitable
        except (AbortError, NetworkError, InvalidSourceError) as exc:
            LOGGER.debug("Preload of %s skipped: %s", source, exc)

    def _publish_loaded(self, source: str, layer: str) -> None:
        if self._events is not None:
            self._events.publish(ImageLoadedEvent(source=source, layer=layer))
