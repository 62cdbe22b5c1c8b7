from __future__ import annotations

import time
from typing import Callable, Dict


DEDUP_CACHE_MAX_SIZE = 10000
DEDUP_CACHE_TTL_SECONDS = 300  # 5 minutes


class DedupCache:
    """Bounded in-memory TTL cache of already-processed message keys.

    Entries are kept in insertion order; when the cache is full, expired
    entries are purged first and then the oldest insertion is evicted.
    Not thread-safe. Intended for a single asyncio event loop.
    """

    def __init__(
        self,
        max_size: int = DEDUP_CACHE_MAX_SIZE,
        ttl_seconds: float = DEDUP_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._cache: Dict[str, float] = {}
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def is_processed(self, key: str) -> bool:
        return key in self._cache

    def mark_processed(self, key: str) -> None:
        if len(self._cache) >= self._max_size:
            self.cleanup()
            if len(self._cache) >= self._max_size:
                oldest = next(iter(self._cache))
                del self._cache[oldest]
        self._cache[key] = self._clock()

    def cleanup(self) -> int:
        """Drop entries older than the TTL. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, ts in self._cache.items() if now - ts > self._ttl]
        for k in expired:
            self._cache.pop(k, None)
        return len(expired)

    def clear(self) -> None:
        self._cache.clear()
