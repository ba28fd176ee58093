"""Caches that pull lines in ahead of demand accesses."""

from __future__ import annotations

import math

from .cache import MASK64, Cache, CacheConfig, CacheEntry, CacheLevel, PrefetchStatus


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else math.nan


class _PrefetchingCache(Cache):
    """Shared prefetch machinery and statistics."""

    def __init__(self, config: CacheConfig, prefetch_size: int, next_level: CacheLevel):
        super().__init__(config, next_level)
        self._init_prefetch_state(prefetch_size)

    def _init_prefetch_state(self, prefetch_size: int) -> None:
        self.prefetch_size = prefetch_size
        self.total_prefetch_count = 0
        self.prefetch_cover_count = 0
        self.prefetch_hit_count = 0

    def _on_hit(self, entry: CacheEntry) -> None:
        if entry.prefetch is PrefetchStatus.PREFETCH:
            self.prefetch_cover_count += 1
            self.prefetch_hit_count += 1
            entry.prefetch = PrefetchStatus.HIT_PREFETCH
        elif entry.prefetch is PrefetchStatus.HIT_PREFETCH:
            self.prefetch_cover_count += 1
        super()._on_hit(entry)

    def prefetch(self, addr: int, length: int) -> None:
        """Bring every block touched by the range into the cache, untimed."""
        for set_index, tag, _ in self._blocks(addr, length):
            self._single_prefetch(set_index, tag)

    def _single_prefetch(self, set_index: int, tag: int) -> None:
        if self._look_up(self._sets[set_index], tag) is not None:
            return
        self.total_prefetch_count += 1
        self._fetch_block(set_index, tag)
        self._evict(set_index, CacheEntry(tag=tag, valid=True, prefetch=PrefetchStatus.PREFETCH))

    def extra_info(self) -> str:
        accesses = self.read_count + self.write_count
        coverage = _ratio(self.prefetch_cover_count, accesses)
        accuracy = _ratio(self.prefetch_hit_count, self.total_prefetch_count)
        return (
            f"Prefetch count: {self.total_prefetch_count}\n"
            f"Prefetch cover count: {self.prefetch_cover_count}\n"
            f"Prefetch hit count: {self.prefetch_hit_count}\n"
            f"Coverage Rate: {coverage:g}\n"
            f"Prefetch Accuracy: {accuracy:g}\n"
        )


class NextLinePrefetchCache(_PrefetchingCache):
    """On every miss, prefetch the following `prefetch_size` blocks."""

    def _prefetch_following(self, set_index: int, tag: int) -> None:
        block = self.config.block_size
        start = (self.form_addr(tag, set_index) + block) & MASK64
        self.prefetch(start, block * self.prefetch_size)

    def _single_read(self, set_index: int, tag: int, length: int) -> int:
        misses = self.read_miss_count
        latency = super()._single_read(set_index, tag, length)
        if self.read_miss_count > misses:
            self._prefetch_following(set_index, tag)
        return latency

    def _single_write(self, set_index: int, tag: int, length: int) -> int:
        misses = self.write_miss_count
        latency = super()._single_write(set_index, tag, length)
        if self.write_miss_count > misses:
            self._prefetch_following(set_index, tag)
        return latency

    def prefetch(self, addr: int, length: int) -> None:
        super().prefetch(addr, length)

    def extra_info(self) -> str:
        return super().extra_info()


class StridePrefetchCache(_PrefetchingCache):
    """On a slow access, prefetch along the stride from the previous access."""

    def __init__(self, config: CacheConfig, prefetch_size: int, next_level: CacheLevel):
        super().__init__(config, prefetch_size, next_level)
        self._last_read_addr = 0
        self._last_write_addr = 0

    def read(self, addr: int, length: int) -> int:
        latency = super().read(addr, length)
        if latency > self.config.hit_latency:
            stride = addr - self._last_read_addr
            for step in range(1, self.prefetch_size + 1):
                self.prefetch((addr + stride * step) & MASK64, self.config.block_size)
        self._last_read_addr = addr
        return latency

    def write(self, addr: int, length: int) -> int:
        latency = super().write(addr, length)
        if latency > self.config.hit_latency:
            stride = addr - self._last_write_addr
            for step in range(1, self.prefetch_size + 1):
                self.prefetch((addr + stride * step) & MASK64, 1)
        self._last_write_addr = addr
        return latency

    def prefetch(self, addr: int, length: int) -> None:
        super().prefetch(addr, length)

    def extra_info(self) -> str:
        return super().extra_info()