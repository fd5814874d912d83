"""Default configuration values for the rePic image pipeline."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Final

# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

# Simultaneous network downloads admitted by the loader.  Anything above this
# stays queued in priority order until a slot frees up.
MAX_CONCURRENT: Final[int] = 6

# Memory tier caps.  Full images are large (~1MB as data URLs) while
# thumbnails stay around 10KB, hence the asymmetry.
MAX_MEMORY_CACHE: Final[int] = 50
MAX_THUMB_CACHE: Final[int] = 200

# ---------------------------------------------------------------------------
# Thumbnails
# ---------------------------------------------------------------------------

THUMB_SIZE: Final[int] = 256
THUMB_QUALITY: Final[int] = 70
THUMB_PREFIX: Final[str] = "thumb:"

# ---------------------------------------------------------------------------
# Offline store
# ---------------------------------------------------------------------------

OFFLINE_DB_NAME: Final[str] = "offline-cache.sqlite3"
OFFLINE_MAX_AGE_DAYS: Final[int] = 30
OFFLINE_MAX_ENTRIES: Final[int] = 200
OFFLINE_EVICTION_MARGIN: Final[int] = 20
OFFLINE_THUMB_MAX_ENTRIES: Final[int] = 500
OFFLINE_THUMB_EVICTION_MARGIN: Final[int] = 50

# ---------------------------------------------------------------------------
# Prefetch and preload
# ---------------------------------------------------------------------------

# The prefetcher keeps ``cursor ± PREFETCH_WINDOW`` downloaded to disk.
PREFETCH_WINDOW: Final[int] = 10
PREFETCH_CONCURRENCY: Final[int] = 8
PREFETCH_DIR_NAME: Final[str] = "prefetch"
PRELOAD_BATCH_SIZE: Final[int] = 8

# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

# How long a direct load may stall before the escalation chain kicks in.
DIRECT_LOAD_TIMEOUT_SEC: Final[float] = 5.0
HTTP_TIMEOUT_SEC: Final[float] = 30.0
PROXY_NAVIGATION_TIMEOUT_MS: Final[int] = 30_000
BROWSER_USER_AGENT: Final[str] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IMAGE_ACCEPT_HEADER: Final[str] = "image/webp,image/apng,image/*,*/*;q=0.8"


def default_cache_dir() -> Path:
    """Return the per-user cache directory for the current platform."""

    if os.name == "nt":
        base = os.environ.get("LOCALAPPDATA")
        if base:
            return Path(base) / "rePic" / "Cache"
        return Path.home() / "AppData" / "Local" / "rePic" / "Cache"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / "rePic"
    base = os.environ.get("XDG_CACHE_HOME")
    if base:
        return Path(base) / "rePic"
    return Path.home() / ".cache" / "rePic"


@dataclass(frozen=True)
class PipelineConfig:
    """Tunables injected into one pipeline instance."""

    cache_dir: Path | None = None
    max_concurrent: int = MAX_CONCURRENT
    memory_cache_size: int = MAX_MEMORY_CACHE
    thumb_cache_size: int = MAX_THUMB_CACHE
    thumb_size: int = THUMB_SIZE
    thumb_quality: int = THUMB_QUALITY
    offline_max_age_days: int = OFFLINE_MAX_AGE_DAYS
    offline_max_entries: int = OFFLINE_MAX_ENTRIES
    offline_eviction_margin: int = OFFLINE_EVICTION_MARGIN
    offline_thumb_max_entries: int = OFFLINE_THUMB_MAX_ENTRIES
    offline_thumb_eviction_margin: int = OFFLINE_THUMB_EVICTION_MARGIN
    prefetch_window: int = PREFETCH_WINDOW
    prefetch_concurrency: int = PREFETCH_CONCURRENCY
    preload_batch_size: int = PRELOAD_BATCH_SIZE
    direct_load_timeout: float = DIRECT_LOAD_TIMEOUT_SEC
    http_timeout: float = HTTP_TIMEOUT_SEC

    @property
    def resolved_cache_dir(self) -> Path:
        return self.cache_dir or default_cache_dir()

    @property
    def offline_db_path(self) -> Path:
        return self.resolved_cache_dir / OFFLINE_DB_NAME

    @property
    def prefetch_dir(self) -> Path:
        return self.resolved_cache_dir / PREFETCH_DIR_NAME

    @property
    def offline_max_age_sec(self) -> float:
        return self.offline_max_age_days * 24 * 60 * 60
