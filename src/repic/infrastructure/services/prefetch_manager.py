"""Sliding-window prefetcher that keeps the images around the cursor on disk.

The prefetcher never touches the network itself.  It hands each window's
missing sources to a :class:`BatchDownloadService` and records the local files
the service reports back, so the viewer can display ``file://`` URLs
instantly while the user scrolls.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, Mapping, Protocol, Sequence, Union

from repic.config import PREFETCH_WINDOW
from repic.events import EventBus, PrefetchBatchFinishedEvent, PrefetchCompletedEvent
from repic.utils.sources import is_network_source, local_file_url

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrefetchItem:
    """Outcome for one source of a batch."""

    request_id: int
    source: str
    success: bool
    local_path: Path | None = None
    payload: str | None = None
    size: int = 0
    cached: bool = False
    error: str | None = None


@dataclass(frozen=True)
class PrefetchSummary:
    """Terminal event of a batch."""

    request_id: int
    completed: int
    failed: int
    duration_ms: int


PrefetchEvent = Union[PrefetchItem, PrefetchSummary]


class BatchDownloadService(Protocol):
    """Downloads a batch of sources and streams per-item results.

    Items arrive in completion order; the stream ends with exactly one
    :class:`PrefetchSummary`.
    """

    def prefetch(
        self,
        sources: Sequence[str],
        *,
        request_id: int,
        options: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[PrefetchEvent]: ...


PrefetchListener = Callable[[Path], None]


class PrefetchManager:
    def __init__(
        self,
        service: BatchDownloadService,
        *,
        window: int = PREFETCH_WINDOW,
        event_bus: EventBus | None = None,
    ):
        if window < 0:
            raise ValueError("window must not be negative")
        self._service = service
        self._window = window
        self._events = event_bus

        self._local_paths: dict[str, Path] = {}
        # source -> id of the batch that requested it
        self._pending: dict[str, int] = {}
        # source still in flight from an older batch -> id of the window that wants it
        self._carried: dict[str, int] = {}
        self._listeners: dict[str, list[PrefetchListener]] = defaultdict(list)
        self._prefetch_id = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def prefetch_id(self) -> int:
        return self._prefetch_id

    @property
    def window(self) -> int:
        return self._window

    def prefetch_window(self, sources: Sequence[str], cursor: int) -> asyncio.Task | None:
        """Request the window ``[cursor - N, cursor + N]`` of *sources*.

        Returns the task consuming the service stream, or *None* when every
        source in the window is already local or pending.
        """
        if not sources:
            return None

        self._prefetch_id += 1
        prefetch_id = self._prefetch_id

        start = max(0, cursor - self._window)
        end = min(len(sources) - 1, cursor + self._window)
        delta: list[str] = []
        for source in sources[start:end + 1]:
            if not is_network_source(source):
                continue
            if source in self._local_paths:
                continue
            if source in self._pending:
                if self._pending[source] != prefetch_id:
                    self._carried[source] = prefetch_id
                continue
            delta.append(source)
            self._pending[source] = prefetch_id

        if not delta:
            return None

        LOGGER.debug("Prefetching %d image(s) around index %d (batch %d)", len(delta), cursor, prefetch_id)
        task = asyncio.get_running_loop().create_task(self._consume(prefetch_id, delta))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _consume(self, prefetch_id: int, batch: list[str]) -> None:
        try:
            async for event in self._service.prefetch(batch, request_id=prefetch_id):
                if isinstance(event, PrefetchSummary):
                    self._on_summary(prefetch_id, event)
                else:
                    self._on_item(prefetch_id, event)
        except Exception:
            LOGGER.exception("Prefetch batch %d failed", prefetch_id)
        finally:
            # Sources the service never reported on may be requested again.
            self._release(prefetch_id, batch)

    def _release(self, prefetch_id: int, sources: Iterable[str]) -> None:
        for source in sources:
            if self._pending.get(source) == prefetch_id:
                del self._pending[source]
                self._carried.pop(source, None)

    def _on_item(self, prefetch_id: int, item: PrefetchItem) -> None:
        wanted = prefetch_id == self._prefetch_id or (
            self._pending.get(item.source) == prefetch_id
            and self._carried.get(item.source) == self._prefetch_id
        )
        self._release(prefetch_id, (item.source,))
        if not wanted:
            LOGGER.debug("Dropping result for %s from superseded batch %d", item.source, prefetch_id)
            return
        if not item.success or item.local_path is None:
            LOGGER.debug("Prefetch of %s failed: %s", item.source, item.error)
            return

        local_path = Path(item.local_path)
        self._local_paths[item.source] = local_path
        self._notify(item.source, local_path)
        if self._events is not None:
            self._events.publish(PrefetchCompletedEvent(source=item.source, local_path=local_path))

    def _on_summary(self, prefetch_id: int, summary: PrefetchSummary) -> None:
        if prefetch_id != self._prefetch_id:
            return
        LOGGER.info(
            "Prefetch batch %d complete: %d/%d in %dms",
            prefetch_id, summary.completed, summary.completed + summary.failed, summary.duration_ms,
        )
        if self._events is not None:
            self._events.publish(
                PrefetchBatchFinishedEvent(
                    prefetch_id=prefetch_id,
                    completed=summary.completed,
                    failed=summary.failed,
                    duration_ms=summary.duration_ms,
                )
            )

    def _notify(self, source: str, local_path: Path) -> None:
        # One-shot: listeners are dropped once they have been called.
        callbacks = self._listeners.pop(source, [])
        for callback in callbacks:
            try:
                callback(local_path)
            except Exception:
                LOGGER.exception("Prefetch listener for %s failed", source)

    def on_prefetch_complete(self, source: str, callback: PrefetchListener) -> Callable[[], None]:
        """Call *callback* once when *source* lands on disk.

        Returns a function that removes the callback again.
        """
        self._listeners[source].append(callback)

        def unsubscribe() -> None:
            callbacks = self._listeners.get(source)
            if not callbacks:
                return
            try:
                callbacks.remove(callback)
            except ValueError:
                return
            if not callbacks:
                del self._listeners[source]

        return unsubscribe

    def get_local_path(self, source: str) -> Path | None:
        return self._local_paths.get(source)

    def get_local_url(self, source: str) -> str | None:
        local_path = self._local_paths.get(source)
        if local_path is None:
            return None
        return local_file_url(local_path)

    def is_pending(self, source: str) -> bool:
        return source in self._pending

    def forget(self, sources: Iterable[str]) -> None:
        """Drop recorded local paths, e.g. after the files were cleaned up."""
        for source in sources:
            self._local_paths.pop(source, None)

    def clear(self) -> None:
        """Supersede every running batch.

        Local paths are kept: the files still exist and can be reused.
        """
        self._prefetch_id += 1
        self._pending.clear()
        self._carried.clear()

    def stats(self) -> dict[str, int]:
        return {
            "cached": len(self._local_paths),
            "pending": len(self._pending),
            "window_size": self._window,
        }

    async def aclose(self) -> None:
        self.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
