"""Application-facing façade over the loader, prefetcher and escalation chain.

Views talk to one :class:`ImagePipeline`; they never reach the caches or the
network directly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from repic.application.services.escalation import EscalatingImageLoader, EscalationResult
from repic.events import EventBus
from repic.infrastructure.services.image_loader import ImageLoader, Priority
from repic.infrastructure.services.offline_store import OfflineImageStore
from repic.infrastructure.services.prefetch_manager import PrefetchManager

LOGGER = logging.getLogger(__name__)


class ImagePipeline:
    """One isolated set of image services.

    Build it with :func:`repic.bootstrap.build_pipeline`; close it with
    :meth:`aclose` when the owning window goes away.
    """

    def __init__(
        self,
        loader: ImageLoader,
        prefetcher: PrefetchManager,
        escalation: EscalatingImageLoader,
        *,
        store: Optional[OfflineImageStore] = None,
        event_bus: Optional[EventBus] = None,
        closers: Sequence[Callable[[], Awaitable[None]]] = (),
    ) -> None:
        self.loader = loader
        self.prefetcher = prefetcher
        self.escalation = escalation
        self.store = store
        self.event_bus = event_bus
        self._closers: List[Callable[[], Awaitable[None]]] = list(closers)
        self._closed = False

    async def viewer_source(self, source: str) -> str:
        """Return something the viewer can display for *source*.

        A prefetched ``file://`` URL is preferred; otherwise the image is
        resolved through the escalation chain at HIGH priority.
        """
        local_url = self.prefetcher.get_local_url(source)
        if local_url is not None:
            return local_url
        result = await self.escalation.resolve(source, Priority.HIGH)
        return result.data

    async def resolve(self, source: str, priority: Priority = Priority.HIGH) -> EscalationResult:
        return await self.escalation.resolve(source, priority)

    async def thumbnail(self, source: str) -> Optional[str]:
        return await self.loader.load_thumbnail(source)

    def prefetch_around(self, sources: Sequence[str], cursor: int) -> Optional[asyncio.Task]:
        """Keep the neighbourhood of *cursor* on disk."""
        return self.prefetcher.prefetch_window(sources, cursor)

    async def warm_thumbnails(self, sources: Sequence[str]) -> None:
        await self.loader.preload_thumbnails(sources)

    def switch_context(self) -> None:
        """Drop everything queued for the previous album or page."""
        dropped = self.loader.cancel_all()
        self.prefetcher.clear()
        LOGGER.debug("Switched context; %d load(s) dropped", dropped)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.prefetcher.aclose()
        await self.loader.aclose()
        for close in self._closers:
            try:
                await close()
            except Exception:
                LOGGER.exception("Error while closing pipeline resource")
        if self.store is not None:
            await self.store.close()
