"""Reference :class:`BatchDownloadService` that downloads straight to disk.

Each source is written to ``<directory>/<xxh3(url)><ext>``.  Because the name
is deterministic, a source downloaded by an earlier batch (or an earlier
session) is reported again as ``cached`` without touching the network.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Sequence

import httpx

from repic.config import BROWSER_USER_AGENT, HTTP_TIMEOUT_SEC, IMAGE_ACCEPT_HEADER, PREFETCH_CONCURRENCY
from repic.infrastructure.services.prefetch_manager import PrefetchEvent, PrefetchItem, PrefetchSummary
from repic.utils.hashutils import prefetch_filename
from repic.utils.sources import is_network_source

LOGGER = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": BROWSER_USER_AGENT,
    "Accept": IMAGE_ACCEPT_HEADER,
}


class HttpBatchDownloader:
    """Downloads batches with bounded concurrency over one ``httpx`` client."""

    def __init__(
        self,
        directory: Path,
        *,
        client: httpx.AsyncClient | None = None,
        concurrency: int = PREFETCH_CONCURRENCY,
        timeout: float = HTTP_TIMEOUT_SEC,
        chunk_size: int = 64 * 1024,
    ):
        self._directory = Path(directory)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers=DEFAULT_HEADERS,
            timeout=timeout,
            follow_redirects=True,
        )
        self._concurrency = max(1, concurrency)
        self._chunk_size = chunk_size

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, source: str) -> Path:
        return self._directory / prefetch_filename(source)

    async def prefetch(
        self,
        sources: Sequence[str],
        *,
        request_id: int,
        options: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[PrefetchEvent]:
        """Yield one :class:`PrefetchItem` per source as it finishes, then a summary.

        ``options`` may override ``concurrency`` for this batch.
        """
        started = time.monotonic()
        concurrency = int((options or {}).get("concurrency", self._concurrency))
        semaphore = asyncio.Semaphore(max(1, concurrency))

        wanted = []
        for source in sources:
            source = source.strip()
            if is_network_source(source) and source not in wanted:
                wanted.append(source)

        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Cannot create prefetch directory %s: %s", self._directory, exc)
            for source in wanted:
                yield PrefetchItem(request_id=request_id, source=source, success=False, error=str(exc))
            yield PrefetchSummary(request_id=request_id, completed=0, failed=len(wanted),
                                  duration_ms=self._elapsed_ms(started))
            return

        async def bounded(source: str) -> PrefetchItem:
            async with semaphore:
                return await self._download_one(source, request_id)

        tasks = [asyncio.ensure_future(bounded(source)) for source in wanted]
        completed = failed = 0
        try:
            for next_done in asyncio.as_completed(tasks):
                item = await next_done
                if item.success:
                    completed += 1
                else:
                    failed += 1
                yield item
        finally:
            # The consumer may stop early; don't leave downloads running.
            for task in tasks:
                task.cancel()

        duration_ms = self._elapsed_ms(started)
        LOGGER.info("Batch %d: %d downloaded, %d failed in %dms", request_id, completed, failed, duration_ms)
        yield PrefetchSummary(request_id=request_id, completed=completed, failed=failed, duration_ms=duration_ms)

    async def _download_one(self, source: str, request_id: int) -> PrefetchItem:
        target = self.path_for(source)
        try:
            size = target.stat().st_size
        except OSError:
            pass
        else:
            return PrefetchItem(request_id=request_id, source=source, success=True,
                                local_path=target, size=size, cached=True)

        try:
            async with self._client.stream("GET", source) as response:
                if response.status_code != 200:
                    return PrefetchItem(request_id=request_id, source=source, success=False,
                                        error=f"HTTP {response.status_code}")
                size = await self._stream_to_disk(response, target)
        except (httpx.HTTPError, OSError) as exc:
            LOGGER.debug("Prefetch download of %s failed: %s", source, exc)
            return PrefetchItem(request_id=request_id, source=source, success=False,
                                error=f"{type(exc).__name__}: {exc}")

        if size == 0:
            return PrefetchItem(request_id=request_id, source=source, success=False, error="empty response body")
        return PrefetchItem(request_id=request_id, source=source, success=True, local_path=target, size=size)

    async def _stream_to_disk(self, response: httpx.Response, target: Path) -> int:
        """Write *response* to a temp file beside *target*, then rename it into place."""
        fd, tmp_name = tempfile.mkstemp(prefix=target.name + ".", suffix=".part", dir=str(target.parent))
        os.close(fd)
        tmp_path = Path(tmp_name)
        written = 0
        try:
            with tmp_path.open("wb") as handle:
                async for chunk in response.aiter_bytes(self._chunk_size):
                    if chunk:
                        handle.write(chunk)
                        written += len(chunk)
            if written:
                os.replace(tmp_path, target)
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
        return written

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
