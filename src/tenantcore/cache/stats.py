"""
Time-windowed cache counters.

Counts are kept in a fixed number of buckets covering the last ``window``
seconds. Old buckets fall off the deque, so memory stays constant no matter
how long the process runs or how many keys it touches.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class _Bucket:
    start: float
    hits: int = 0
    misses: int = 0
    errors: int = 0
    retrievals: int = 0
    retrieval_seconds: float = 0.0


@dataclass(frozen=True)
class CacheStatsSnapshot:
    """Totals over the current window."""

    hits: int
    misses: int
    errors: int
    window_seconds: float
    average_retrieval_ms: float

    @property
    def requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.requests if self.requests else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "requests": self.requests,
            "hit_rate": round(self.hit_rate, 4),
            "average_retrieval_ms": round(self.average_retrieval_ms, 3),
            "window_seconds": self.window_seconds,
        }


class CacheStats:
    """
    Bounded hit/miss/error counters over a sliding time window.

    Args:
        window: Window length in seconds
        buckets: Number of buckets the window is split into
        clock: Monotonic time source
    """

    def __init__(
        self,
        window: float = 300.0,
        buckets: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window <= 0:
            raise ValueError(f"window must be positive, got {window}.")
        if buckets < 1:
            raise ValueError(f"buckets must be >= 1, got {buckets}.")
        self.window = window
        self._width = window / buckets
        self._clock = clock
        self._buckets: deque[_Bucket] = deque(maxlen=buckets)

    def _current(self) -> _Bucket:
        now = self._clock()
        start = now - (now % self._width)
        if not self._buckets or self._buckets[-1].start != start:
            self._buckets.append(_Bucket(start=start))
        return self._buckets[-1]

    def record_hit(self, retrieval_seconds: float = 0.0) -> None:
        bucket = self._current()
        bucket.hits += 1
        bucket.retrievals += 1
        bucket.retrieval_seconds += retrieval_seconds

    def record_miss(self, retrieval_seconds: float = 0.0) -> None:
        bucket = self._current()
        bucket.misses += 1
        bucket.retrievals += 1
        bucket.retrieval_seconds += retrieval_seconds

    def record_error(self) -> None:
        self._current().errors += 1

    def snapshot(self) -> CacheStatsSnapshot:
        cutoff = self._clock() - self.window
        live = [b for b in self._buckets if b.start + self._width > cutoff]
        retrievals = sum(b.retrievals for b in live)
        seconds = sum(b.retrieval_seconds for b in live)
        return CacheStatsSnapshot(
            hits=sum(b.hits for b in live),
            misses=sum(b.misses for b in live),
            errors=sum(b.errors for b in live),
            window_seconds=self.window,
            average_retrieval_ms=(seconds / retrievals * 1000) if retrievals else 0.0,
        )

    def reset(self) -> None:
        self._buckets.clear()

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)


__all__ = ["CacheStats", "CacheStatsSnapshot"]
