"""Classification helpers for image source identifiers."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlsplit

NETWORK_SCHEMES = ("http://", "https://")
LOCAL_SCHEMES = ("file://", "data:")
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})


def is_network_source(source: str | None) -> bool:
    return bool(source) and source.startswith(NETWORK_SCHEMES)


def is_local_source(source: str | None) -> bool:
    return bool(source) and source.startswith(LOCAL_SCHEMES)


def extension_for_url(url: str, default: str = ".jpg") -> str:
    """Return the image extension of *url*'s path, or *default*."""

    try:
        path = urlsplit(url).path
    except ValueError:
        return default
    suffix = Path(path).suffix.lower()
    return suffix if suffix in IMAGE_EXTENSIONS else default


def origin_of(url: str) -> str | None:
    """Return ``scheme://host[:port]/`` for *url*, used as a Referer."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}/"


def local_file_url(path: Path) -> str:
    """Return a ``file://`` URL the UI can display directly."""

    return path.resolve().as_uri()
