"""Trace-driven cache simulators."""

from __future__ import annotations

import re
import sys
from typing import Iterable, Optional

from .cache import (
    Cache,
    CacheConfig,
    CacheLevel,
    EvictPolicy,
    InvalidCacheConfig,
    Memory,
    WriteMissPolicy,
    WritePolicy,
)
from .combined import CombinedCache
from .nonblocking import NonBlockingCache, VictimCache
from .prefetch import NextLinePrefetchCache, StridePrefetchCache

USE_HELP = (
    "Usage: CacheSimulator"
    " --[WriteBack|WriteThrough]"
    " --[WriteAllocate|NoWriteAllocate]"
    " --[LRU]"
    " <cache_size>"
    " <block_size>"
    " <associativity>"
    " trace_path\n"
)

LAB_USE_HELP = (
    "Usage: CacheSimulator"
    " trace_path\n"
    " --opt1: Use an enhanced cache(with prefetch and other optimizations, details in report)\n"
    " --opt2: Use a non-blocking cache\n"
    " --opt3: Use a victim cache\n"
    " --opt4: Use a stride prefetch cache\n"
    " --opt5: Use a cache with nextline prefetch and non-blocking\n"
)

MAIN_MEMORY = CacheConfig(0, 0, 0, hit_latency=200, bus_latency=20)

_LAB_DRAM = CacheConfig(0, 0, 0, hit_latency=80, bus_latency=20)
_LAB_L2 = CacheConfig(262144, 64, 8, hit_latency=4, bus_latency=6)
_LAB_L1 = CacheConfig(32768, 64, 8, hit_latency=3, bus_latency=0)

_WRITE_POLICIES = {
    "--WriteBack": WritePolicy.WRITE_BACK,
    "--WriteThrough": WritePolicy.WRITE_THROUGH,
}
_WRITE_MISS_POLICIES = {
    "--WriteAllocate": WriteMissPolicy.WRITE_ALLOCATE,
    "--NoWriteAllocate": WriteMissPolicy.NO_WRITE_ALLOCATE,
}
_EVICT_POLICIES = {"--LRU": EvictPolicy.LRU}

_HEX = re.compile(r"\s*([+-]?(?:0[xX])?[0-9a-fA-F]+)")


class UsageError(Exception):
    """The command line does not match the expected usage."""


def parse_config(args: list[str]) -> CacheConfig:
    """Build a cache configuration from the seven command-line arguments."""
    if len(args) != 7:
        raise UsageError("expected seven arguments")
    try:
        write_policy = _WRITE_POLICIES[args[0]]
        write_miss_policy = _WRITE_MISS_POLICIES[args[1]]
        evict_policy = _EVICT_POLICIES[args[2]]
    except KeyError as exc:
        raise UsageError(f"unknown option {exc.args[0]}") from None
    try:
        cache_size, block_size, associativity = (int(a) for a in args[3:6])
    except ValueError:
        raise UsageError("sizes must be integers") from None
    return CacheConfig(
        cache_size=cache_size,
        block_size=block_size,
        associativity=associativity,
        evict_policy=evict_policy,
        write_policy=write_policy,
        write_miss_policy=write_miss_policy,
        hit_latency=3,
        bus_latency=0,
    )


def parse_trace_line(line: str) -> tuple[str, int]:
    """Split a trace line such as ``r 0x1000`` into its operation and address."""
    if not line:
        raise ValueError("empty trace line")
    op = line[0]
    if op not in ("r", "w"):
        raise ValueError("Invalid operation in trace file.")
    match = _HEX.match(line, 1)
    if match is None:
        raise ValueError(f"missing address in trace line: {line!r}")
    return op, int(match.group(1), 16) & ((1 << 64) - 1)


def run_trace(cache: CacheLevel, lines: Iterable[str], tick: int = 0) -> tuple[int, int]:
    """Replay a trace; return the total latency and the number of accesses."""
    total_latency = 0
    accesses = 0
    for raw in lines:
        line = raw.rstrip("\n")
        if not line:
            continue
        accesses += 1
        op, addr = parse_trace_line(line)
        if op == "r":
            total_latency += cache.read(addr, 1)
        else:
            total_latency += cache.write(addr, 1)
        if tick:
            cache.next_clock(tick)
    return total_latency, accesses


def build_lab_hierarchy(option: Optional[str]) -> tuple[CacheLevel, CacheLevel]:
    """The two-level hierarchy selected by an ``--optN`` flag; returns (L1, L2)."""
    dram = Memory(_LAB_DRAM)
    if option is None:
        l1: CacheLevel = Cache(_LAB_L1, Cache(_LAB_L2, dram))
    elif option == "--opt1":
        l1 = NextLinePrefetchCache(_LAB_L1, 3, NextLinePrefetchCache(_LAB_L2, 3, dram))
    elif option == "--opt2":
        l1 = NonBlockingCache(_LAB_L1, 2, NonBlockingCache(_LAB_L2, 4, dram))
    elif option == "--opt3":
        l1 = VictimCache(_LAB_L1, 32, Cache(_LAB_L2, dram))
    elif option == "--opt4":
        l1 = StridePrefetchCache(_LAB_L1, 3, StridePrefetchCache(_LAB_L2, 3, dram))
    elif option == "--opt5":
        l1 = CombinedCache(_LAB_L1, 4, 3, CombinedCache(_LAB_L2, 8, 3, dram))
    else:
        raise UsageError("Invalid option.")
    return l1, l1.next_level


def _replay_file(cache: CacheLevel, path: str, tick: int) -> Optional[tuple[int, int]]:
    try:
        trace = open(path, encoding="utf-8", errors="replace")
    except OSError:
        print("Error: Unable to open trace file.", file=sys.stderr)
        return None
    with trace:
        try:
            return run_trace(cache, trace, tick)
        except ValueError:
            print("Error: Invalid operation in trace file.", file=sys.stderr)
            return None


def main(argv: Optional[list[str]] = None) -> int:
    """Simulate one configurable cache over a trace file."""
    args = sys.argv[1:] if argv is None else list(argv)
    try:
        config = parse_config(args)
        cache = Cache(config, Memory(MAIN_MEMORY))
    except UsageError:
        print(USE_HELP, file=sys.stderr)
        return 1
    except InvalidCacheConfig as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    result = _replay_file(cache, args[6], 0)
    if result is None:
        return 1
    total_latency, _ = result
    print(f"Total Reads: {cache.read_count}")
    print(f"Total Read Misses: {cache.read_miss_count}")
    print(f"Total Writes: {cache.write_count}")
    print(f"Total Write Misses: {cache.write_miss_count}")
    print(f"Total Latency: {total_latency}")
    return 0


def lab_main(argv: Optional[list[str]] = None) -> int:
    """Compare cache optimisations on a trace with a fixed two-level hierarchy."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not 1 <= len(args) <= 2:
        print(LAB_USE_HELP, file=sys.stderr)
        return 1
    try:
        l1, l2 = build_lab_hierarchy(args[1] if len(args) == 2 else None)
    except UsageError:
        print("Error: Invalid option.", file=sys.stderr)
        return 1
    result = _replay_file(l1, args[0], 3)
    if result is None:
        return 1
    total_latency, accesses = result
    out = sys.stdout
    print(f"L1 Total Reads: {l1.read_count}")
    print(f"L2 Total Read Misses: {l1.read_miss_count}")
    print(f"L1 Total Writes: {l1.write_count}")
    print(f"L1 Total Write Misses: {l1.write_miss_count}")
    print(f"L1 Miss Rate: {l1.miss_rate() * 100:.2f}%")
    print("L1 Extra Info:")
    out.write(l1.extra_info())
    print(f"L2 Total Reads: {l2.read_count}")
    print(f"L2 Total Read Misses: {l2.read_miss_count}")
    print(f"L2 Total Writes: {l2.write_count}")
    print(f"L2 Total Write Misses: {l2.write_miss_count}")
    print(f"L2 Miss Rate: {l2.miss_rate() * 100:.2f}%")
    print("L2 Extra Info:")
    out.write(l2.extra_info())
    memory = l2.next_level
    print(f"Main Memory Total Reads: {memory.read_count}")
    print(f"Main Memory Total Writes: {memory.write_count}")
    print(f"Total Latency: {total_latency}")
    average = total_latency / accesses if accesses else float("nan")
    print(f"Average Latency: {average:.2f}")
    return 0