"""A cache combining next-line prefetching with non-blocking miss handling."""

from __future__ import annotations

from .cache import Cache, CacheConfig, CacheLevel
from .nonblocking import NonBlockingCache
from .prefetch import NextLinePrefetchCache


class CombinedCache(NonBlockingCache, NextLinePrefetchCache):
    """Hides miss latency in MSHRs and prefetches the following lines on a miss.

    An access to a block with an outstanding miss waits for it and triggers
    no prefetch; a hit updates the prefetch statistics; a miss fills the line,
    takes a free MSHR if there is one and then prefetches the next lines.
    """

    def __init__(
        self,
        config: CacheConfig,
        mshr_count: int,
        prefetch_size: int,
        next_level: CacheLevel,
    ):
        Cache.__init__(self, config, next_level)
        self._init_prefetch_state(prefetch_size)
        self._init_mshrs(mshr_count)

    def next_clock(self, cycles: int) -> None:
        """Advance outstanding misses here and let time pass below."""
        NonBlockingCache.next_clock(self, cycles)

    def extra_info(self) -> str:
        return NextLinePrefetchCache.extra_info(self)