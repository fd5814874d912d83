"""Events published by the image pipeline for UI layers."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .bus import Event


@dataclass(kw_only=True)
class ImageLoadedEvent(Event):
    """An image became available in the caches.

    ``layer`` names where the bytes came from: ``network``, ``offline``,
    ``network_proxy`` or ``browser_proxy``.
    """
    source: str
    layer: str


@dataclass(kw_only=True)
class ImageUnavailableEvent(Event):
    """Every escalation layer failed for ``source``."""
    source: str
    reason: str = ""


@dataclass(kw_only=True)
class LoadsCancelledEvent(Event):
    """``ImageLoader.cancel_all`` started a new generation."""
    generation: int
    dropped: int = 0


@dataclass(kw_only=True)
class PrefetchCompletedEvent(Event):
    source: str
    local_path: Path


@dataclass(kw_only=True)
class PrefetchBatchFinishedEvent(Event):
    prefetch_id: int
    completed: int
    failed: int
    duration_ms: int
