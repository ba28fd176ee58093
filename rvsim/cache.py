"""Set-associative cache hierarchy with LRU replacement and latency accounting."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, Optional

MASK64 = (1 << 64) - 1


class InvalidCacheConfig(ValueError):
    """Raised when a cache geometry is not a valid power-of-two layout."""


class EvictPolicy(enum.Enum):
    LRU = "LRU"


class WritePolicy(enum.Enum):
    WRITE_BACK = "WriteBack"
    WRITE_THROUGH = "WriteThrough"


class WriteMissPolicy(enum.Enum):
    WRITE_ALLOCATE = "WriteAllocate"
    NO_WRITE_ALLOCATE = "NoWriteAllocate"


class PrefetchStatus(enum.Enum):
    NOT_PREFETCH = "NotPrefetch"
    PREFETCH = "Prefetch"
    HIT_PREFETCH = "HitPrefetch"


@dataclass(frozen=True)
class CacheConfig:
    cache_size: int
    block_size: int
    associativity: int
    evict_policy: EvictPolicy = EvictPolicy.LRU
    write_policy: WritePolicy = WritePolicy.WRITE_BACK
    write_miss_policy: WriteMissPolicy = WriteMissPolicy.WRITE_ALLOCATE
    hit_latency: int = 0
    bus_latency: int = 0


@dataclass
class CacheEntry:
    tag: int = 0
    dirty: bool = False
    valid: bool = False
    prefetch: PrefetchStatus = PrefetchStatus.NOT_PREFETCH


def _single_bit(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def is_valid_config(config: CacheConfig) -> bool:
    """Sizes must be powers of two and the associativity must fit the cache."""
    return (
        _single_bit(config.cache_size)
        and _single_bit(config.block_size)
        and _single_bit(config.associativity)
        and config.cache_size >= config.block_size
        and config.associativity <= config.cache_size // config.block_size
    )


class CacheLevel(ABC):
    """One level of the memory hierarchy, with access statistics."""

    def __init__(self, config: CacheConfig, next_level: Optional["CacheLevel"] = None):
        self.config = config
        self.next_level = next_level
        self.read_count = 0
        self.read_miss_count = 0
        self.write_count = 0
        self.write_miss_count = 0
        self.replacement_count = 0

    @abstractmethod
    def read(self, addr: int, length: int) -> int:
        """Read `length` bytes at `addr`; return the latency in cycles."""

    @abstractmethod
    def write(self, addr: int, length: int) -> int:
        """Write `length` bytes at `addr`; return the latency in cycles."""

    def next_clock(self, cycles: int) -> None:
        """Let `cycles` cycles pass at this level and below."""
        if self.next_level is not None:
            self.next_level.next_clock(cycles)

    def miss_rate(self) -> float:
        total = self.read_count + self.write_count
        if total == 0:
            return 0.0
        return (self.read_miss_count + self.write_miss_count) / total

    def extra_info(self) -> str:
        """Additional statistics specific to this kind of level."""
        return ""


class Memory(CacheLevel):
    """Main memory: every access costs the configured hit latency."""

    def read(self, addr: int, length: int) -> int:
        self.read_count += 1
        return self.config.hit_latency

    def write(self, addr: int, length: int) -> int:
        self.write_count += 1
        return self.config.hit_latency


class Cache(CacheLevel):
    """A blocking set-associative LRU cache backed by a lower level."""

    def __init__(self, config: CacheConfig, next_level: CacheLevel):
        if not is_valid_config(config):
            raise InvalidCacheConfig(f"invalid cache configuration: {config}")
        if config.evict_policy is not EvictPolicy.LRU:
            raise InvalidCacheConfig(f"unsupported eviction policy: {config.evict_policy}")
        super().__init__(config, next_level)
        self.set_count = config.cache_size // config.block_size // config.associativity
        self._block_shift = config.block_size.bit_length() - 1
        self._tag_shift = self._block_shift + self.set_count.bit_length() - 1
        # Each set is ordered most recently used first.
        self._sets = [
            [CacheEntry() for _ in range(config.associativity)]
            for _ in range(self.set_count)
        ]

    # geometry

    def set_index(self, addr: int) -> int:
        return (addr >> self._block_shift) & (self.set_count - 1)

    def tag(self, addr: int) -> int:
        return addr >> self._tag_shift

    def form_addr(self, tag: int, set_index: int) -> int:
        return (tag << self._tag_shift) | (set_index << self._block_shift)

    def _blocks(self, addr: int, length: int) -> Iterator[tuple[int, int, int]]:
        """Split an access into (set index, tag, length) per touched block."""
        block = self.config.block_size
        addr &= MASK64
        length += addr % block
        addr -= addr % block
        while length > 0:
            chunk = min(length, block)
            yield self.set_index(addr), self.tag(addr), chunk
            length -= chunk
            addr = (addr + chunk) & MASK64

    # public access

    def read(self, addr: int, length: int) -> int:
        return sum(self._single_read(s, t, n) for s, t, n in self._blocks(addr, length))

    def write(self, addr: int, length: int) -> int:
        return sum(self._single_write(s, t, n) for s, t, n in self._blocks(addr, length))

    # building blocks shared with specialised caches

    @staticmethod
    def _look_up(lines: list[CacheEntry], tag: int) -> Optional[int]:
        return next(
            (pos for pos, entry in enumerate(lines) if entry.valid and entry.tag == tag),
            None,
        )

    @staticmethod
    def _promote(lines: list[CacheEntry], pos: int) -> None:
        lines.insert(0, lines.pop(pos))

    def _on_hit(self, entry: CacheEntry) -> None:
        """Hook run on every hit before the line is promoted."""

    def _fetch_block(self, set_index: int, tag: int) -> int:
        below = self.next_level
        return below.config.bus_latency + below.read(
            self.form_addr(tag, set_index), self.config.block_size
        )

    def _apply_write_policy(
        self, entry: CacheEntry, set_index: int, tag: int, length: int
    ) -> int:
        if self.config.write_policy is WritePolicy.WRITE_THROUGH:
            entry.dirty = False
            below = self.next_level
            return below.config.bus_latency + below.write(self.form_addr(tag, set_index), length)
        entry.dirty = True
        return 0

    def _read_miss_fill(self, set_index: int, tag: int) -> int:
        extra = self._fetch_block(set_index, tag)
        return extra + self._evict(set_index, CacheEntry(tag=tag, valid=True))

    def _write_hit(self, lines: list[CacheEntry], pos: int, set_index: int, tag: int,
                   length: int) -> int:
        extra = self._apply_write_policy(lines[pos], set_index, tag, length)
        self._promote(lines, pos)
        return extra

    def _write_miss(self, set_index: int, tag: int, length: int) -> int:
        cfg = self.config
        no_fetch = (
            cfg.write_policy is WritePolicy.WRITE_THROUGH
            and cfg.write_miss_policy is WriteMissPolicy.NO_WRITE_ALLOCATE
        )
        extra = 0 if no_fetch else self._fetch_block(set_index, tag)
        entry = CacheEntry(tag=tag, valid=True)
        extra += self._apply_write_policy(entry, set_index, tag, length)
        if cfg.write_miss_policy is WriteMissPolicy.WRITE_ALLOCATE:
            extra += self._evict(set_index, entry)
        return extra

    def _single_read(self, set_index: int, tag: int, length: int) -> int:
        self.read_count += 1
        lines = self._sets[set_index]
        pos = self._look_up(lines, tag)
        if pos is not None:
            self._on_hit(lines[pos])
            self._promote(lines, pos)
            return self.config.hit_latency
        self.read_miss_count += 1
        return self.config.hit_latency + self._read_miss_fill(set_index, tag)

    def _single_write(self, set_index: int, tag: int, length: int) -> int:
        self.write_count += 1
        lines = self._sets[set_index]
        pos = self._look_up(lines, tag)
        if pos is not None:
            self._on_hit(lines[pos])
            return self.config.hit_latency + self._write_hit(lines, pos, set_index, tag, length)
        self.write_miss_count += 1
        return self.config.hit_latency + self._write_miss(set_index, tag, length)

    def _evict(self, set_index: int, entry: CacheEntry) -> int:
        """Replace the least recently used line of a set with `entry`."""
        self.replacement_count += 1
        lines = self._sets[set_index]
        victim = lines.pop()
        lines.insert(0, entry)
        if victim.valid and victim.dirty:
            below = self.next_level
            latency = below.write(self.form_addr(victim.tag, set_index), self.config.block_size)
            return latency + below.config.bus_latency
        return 0


_DRAM = CacheConfig(0, 0, 0, hit_latency=200, bus_latency=20)
_LLC = CacheConfig(1 << 23, 64, 8, hit_latency=20, bus_latency=20)
_L2 = CacheConfig(1 << 18, 64, 8, hit_latency=8, bus_latency=6)
_L1 = CacheConfig(1 << 15, 64, 8, hit_latency=4, bus_latency=4)
_FLAT = CacheConfig(0, 0, 0, hit_latency=1, bus_latency=0)


def build_backend(cache_enabled: bool) -> CacheLevel:
    """The simulator's memory backend: a three-level hierarchy or flat memory."""
    if not cache_enabled:
        return Memory(_FLAT)
    llc = Cache(_LLC, Memory(_DRAM))
    return Cache(_L1, Cache(_L2, llc))


def level_miss_rates(backend: CacheLevel) -> tuple[float, float, float]:
    """Miss rates of the L1, L2 and last-level caches of a backend."""
    rates = []
    level: Optional[CacheLevel] = backend
    for name in ("L1", "L2", "LLC"):
        if not isinstance(level, Cache):
            raise ValueError(f"{name} is not a cache")
        rates.append(level.miss_rate())
        level = level.next_level
    return rates[0], rates[1], rates[2]