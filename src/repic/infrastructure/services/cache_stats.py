"""Cache hit-rate statistics collector.

Tracks ``hit`` / ``miss`` counts per cache tier (``memory``, ``offline``,
``thumbnail``) so the loader's effectiveness can be inspected from a debug
panel or a test.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass


@dataclass(frozen=True)
class CacheStats:
    """Immutable snapshot of cache statistics."""

    hits: int = 0
    misses: int = 0

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Hit rate as a float in [0.0, 1.0]; 0.0 when no requests."""
        if self.total == 0:
            return 0.0
        return self.hits / self.total


class CacheStatsCollector:
    """Per-tier hit/miss counters.

    Only touched from the event-loop thread, so plain counters suffice.
    """

    def __init__(self) -> None:
        self._hits: Counter[str] = Counter()
        self._misses: Counter[str] = Counter()

    def record(self, tier: str, hit: bool) -> None:
        if hit:
            self._hits[tier] += 1
        else:
            self._misses[tier] += 1

    def record_hit(self, tier: str) -> None:
        self.record(tier, True)

    def record_miss(self, tier: str) -> None:
        self.record(tier, False)

    def get(self, tier: str) -> CacheStats:
        return CacheStats(hits=self._hits[tier], misses=self._misses[tier])

    def all(self) -> dict[str, CacheStats]:
        """Snapshots for every tier that has recorded data."""
        names = set(self._hits) | set(self._misses)
        return {name: self.get(name) for name in sorted(names)}

    def reset(self, tier: str | None = None) -> None:
        """Reset counters.  If *tier* is ``None``, reset all."""
        if tier is None:
            self._hits.clear()
            self._misses.clear()
        else:
            self._hits.pop(tier, None)
            self._misses.pop(tier, None)
