"""Non-blocking caches with miss status holding registers, and a victim cache."""

from __future__ import annotations

from dataclasses import dataclass

from .cache import Cache, CacheConfig, CacheEntry, CacheLevel


@dataclass
class MSHR:
    """An outstanding miss: the block address and the cycles until it is filled."""

    valid: bool = False
    addr: int = 0
    left_clock: int = 0


class NonBlockingCache(Cache):
    """A cache that hides miss latency while an MSHR is free."""

    def __init__(self, config: CacheConfig, mshr_count: int, next_level: CacheLevel):
        super().__init__(config, next_level)
        self._init_mshrs(mshr_count)

    def _init_mshrs(self, count: int) -> None:
        self.mshrs = [MSHR() for _ in range(count)]
        self.hit_under_miss = 0

    def conflict_cycles(self, addr: int) -> int:
        """Cycles left on an outstanding miss for the block at `addr`, or 0."""
        return next(
            (mshr.left_clock for mshr in self.mshrs if mshr.valid and mshr.addr == addr),
            0,
        )

    def _defer(self, set_index: int, tag: int, extra: int) -> int:
        mshr = next((m for m in self.mshrs if not m.valid), None)
        if mshr is None:
            return extra
        mshr.valid = True
        mshr.addr = self.form_addr(tag, set_index)
        mshr.left_clock = self.config.hit_latency + extra
        self.hit_under_miss += 1
        return 0

    def _single_read(self, set_index: int, tag: int, length: int) -> int:
        stall = self.conflict_cycles(self.form_addr(tag, set_index))
        if stall > 0:
            self.read_count += 1
            return self.config.hit_latency + stall
        return super()._single_read(set_index, tag, length)

    def _single_write(self, set_index: int, tag: int, length: int) -> int:
        stall = self.conflict_cycles(self.form_addr(tag, set_index))
        if stall > 0:
            self.write_count += 1
            return self.config.hit_latency + stall
        return super()._single_write(set_index, tag, length)

    def _read_miss_fill(self, set_index: int, tag: int) -> int:
        return self._defer(set_index, tag, super()._read_miss_fill(set_index, tag))

    def _write_miss(self, set_index: int, tag: int, length: int) -> int:
        return self._defer(set_index, tag, super()._write_miss(set_index, tag, length))

    def next_clock(self, cycles: int) -> None:
        for mshr in self.mshrs:
            if mshr.valid:
                mshr.left_clock -= cycles
                if mshr.left_clock <= 0:
                    mshr.valid = False
                    mshr.left_clock = 0
        super().next_clock(cycles)


@dataclass
class _VictimEntry:
    addr: int = 0
    dirty: bool = False
    valid: bool = False


class VictimCache(Cache):
    """A cache with a small fully associative buffer of recently placed lines."""

    def __init__(self, config: CacheConfig, victim_size: int, next_level: CacheLevel):
        super().__init__(config, next_level)
        self.victim_size = victim_size
        self.victim_hit_count = 0
        self._victims = [_VictimEntry() for _ in range(victim_size)]

    def _recall(self, set_index: int, tag: int) -> None:
        """Swap a line found in the victim buffer back into its set."""
        lines = self._sets[set_index]
        if self._look_up(lines, tag) is not None:
            return
        addr = self.form_addr(tag, set_index)
        pos = next(
            (i for i, v in enumerate(self._victims) if v.valid and v.addr == addr),
            None,
        )
        if pos is None:
            return
        self.victim_hit_count += 1
        found = self._victims.pop(pos)
        lines.insert(0, CacheEntry(tag=tag, dirty=found.dirty, valid=True))
        displaced = lines.pop()
        self._victims.insert(
            0, _VictimEntry(self.form_addr(displaced.tag, set_index), displaced.dirty, True)
        )

    def _single_read(self, set_index: int, tag: int, length: int) -> int:
        self._recall(set_index, tag)
        return super()._single_read(set_index, tag, length)

    def _single_write(self, set_index: int, tag: int, length: int) -> int:
        self._recall(set_index, tag)
        return super()._single_write(set_index, tag, length)

    def _evict(self, set_index: int, entry: CacheEntry) -> int:
        self.replacement_count += 1
        lines = self._sets[set_index]
        lines.pop()
        lines.insert(0, entry)
        # The incoming line is what gets recorded in the buffer.
        self._victims.insert(
            0, _VictimEntry(self.form_addr(entry.tag, set_index), entry.dirty, True)
        )
        oldest = self._victims.pop()
        if oldest.valid and oldest.dirty:
            below = self.next_level
            latency = below.write(oldest.addr, self.config.block_size)
            return latency + below.config.bus_latency
        return 0