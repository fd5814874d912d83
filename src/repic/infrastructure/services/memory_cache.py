"""Hot tier: bounded LRU caches for full images and thumbnails."""

from __future__ import annotations

from collections import OrderedDict
from typing import Generic, Hashable, Iterator, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Bounded map that evicts the least-recently-used entry.

    ``get`` promotes the entry to most-recently-used; membership tests do
    not.  After every mutation ``size <= max_size`` holds.  The cache is
    meant to be touched from the event-loop thread only, so there is no
    locking.
    """

    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._cache: OrderedDict[K, V] = OrderedDict()
        self._max_size = max_size

    def get(self, key: K) -> V | None:
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]
        return None

    def put(self, key: K, value: V) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        self._cache[key] = value
        if len(self._cache) > self._max_size:
            self._cache.popitem(last=False)  # evict oldest

    def contains(self, key: K) -> bool:
        return key in self._cache

    def invalidate(self, key: K) -> bool:
        return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        self._cache.clear()

    def keys(self) -> list[K]:
        """Keys ordered from least to most recently used."""
        return list(self._cache)

    @property
    def size(self) -> int:
        return len(self._cache)

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def payload_bytes(self) -> int:
        """Rough memory footprint, counting ``len`` of sized values."""
        return sum(len(v) for v in self._cache.values() if hasattr(v, "__len__"))

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._cache))
