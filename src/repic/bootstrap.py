"""Composition root: wires one :class:`ImagePipeline` from a config."""

from __future__ import annotations

import logging
from typing import Optional

from repic.application.services.escalation import EscalatingImageLoader
from repic.application.services.image_pipeline import ImagePipeline
from repic.config import PipelineConfig
from repic.events import EventBus
from repic.infrastructure.services.batch_downloader import HttpBatchDownloader
from repic.infrastructure.services.cache_stats import CacheStatsCollector
from repic.infrastructure.services.image_fetcher import HttpImageFetcher, ImageFetcher
from repic.infrastructure.services.image_loader import ImageLoader
from repic.infrastructure.services.image_proxy import BrowserImageProxy, ImageProxy, NetworkImageProxy
from repic.infrastructure.services.memory_cache import LRUCache
from repic.infrastructure.services.offline_store import (
    FULL_NAMESPACE,
    THUMB_NAMESPACE,
    NamespacePolicy,
    OfflineImageStore,
    OfflineStoreBackend,
    SQLiteOfflineBackend,
)
from repic.infrastructure.services.prefetch_manager import BatchDownloadService, PrefetchManager
from repic.infrastructure.services.thumbnail_generator import PillowThumbnailGenerator

LOGGER = logging.getLogger(__name__)


def build_pipeline(
    config: Optional[PipelineConfig] = None,
    *,
    fetcher: Optional[ImageFetcher] = None,
    batch_service: Optional[BatchDownloadService] = None,
    network_proxy: Optional[ImageProxy] = None,
    browser_proxy: Optional[ImageProxy] = None,
    event_bus: Optional[EventBus] = None,
    store_backend: Optional[OfflineStoreBackend] = None,
) -> ImagePipeline:
    """Create a fresh, isolated pipeline.

    Collaborators left out are built from *config*.

    Ownership on :meth:`ImagePipeline.aclose`:

    * ``fetcher`` and ``store_backend`` are always closed, including ones
      passed in here.  Do not share them with another pipeline.
    * ``network_proxy``, ``browser_proxy`` and ``batch_service`` are closed
      only when built here; passed-in ones stay owned by the caller.
    """
    config = config or PipelineConfig()
    event_bus = event_bus or EventBus()
    closers = []

    backend = store_backend or SQLiteOfflineBackend(config.offline_db_path)
    store = OfflineImageStore(
        backend,
        max_age_sec=config.offline_max_age_sec,
        policies={
            FULL_NAMESPACE: NamespacePolicy(config.offline_max_entries, config.offline_eviction_margin),
            THUMB_NAMESPACE: NamespacePolicy(config.offline_thumb_max_entries, config.offline_thumb_eviction_margin),
        },
    )

    loader = ImageLoader(
        fetcher or HttpImageFetcher(timeout=config.http_timeout),
        store=store,
        thumbnailer=PillowThumbnailGenerator(config.thumb_size, config.thumb_quality),
        memory_cache=LRUCache(config.memory_cache_size),
        thumb_cache=LRUCache(config.thumb_cache_size),
        max_concurrent=config.max_concurrent,
        preload_batch_size=config.preload_batch_size,
        stats=CacheStatsCollector(),
        event_bus=event_bus,
    )

    if batch_service is None:
        downloader = HttpBatchDownloader(
            config.prefetch_dir,
            concurrency=config.prefetch_concurrency,
            timeout=config.http_timeout,
        )
        closers.append(downloader.aclose)
        batch_service = downloader
    prefetcher = PrefetchManager(batch_service, window=config.prefetch_window, event_bus=event_bus)

    if network_proxy is None:
        network_proxy = NetworkImageProxy(timeout=config.http_timeout)
        closers.append(network_proxy.aclose)
    if browser_proxy is None:
        # Chromium only starts if a request actually reaches this layer.
        browser_proxy = BrowserImageProxy()
        closers.append(browser_proxy.aclose)
    escalation = EscalatingImageLoader(
        loader,
        network_proxy=network_proxy,
        browser_proxy=browser_proxy,
        timeout=config.direct_load_timeout,
        event_bus=event_bus,
    )

    LOGGER.debug("Built image pipeline (cache dir %s)", config.resolved_cache_dir)
    return ImagePipeline(
        loader, prefetcher, escalation, store=store, event_bus=event_bus, closers=closers,
    )
