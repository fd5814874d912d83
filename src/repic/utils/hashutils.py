"""Hashing utilities."""

from __future__ import annotations

import xxhash

from .sources import extension_for_url


def url_digest(url: str) -> str:
    """Return the XXH3 64-bit hex digest of *url*."""

    return xxhash.xxh3_64_hexdigest(url.encode("utf-8"))


def prefetch_filename(url: str) -> str:
    """Deterministic on-disk name for a prefetched *url*.

    The same URL always maps to the same file so a later batch can reuse
    what an earlier one already downloaded.
    """

    return f"{url_digest(url)}{extension_for_url(url)}"
