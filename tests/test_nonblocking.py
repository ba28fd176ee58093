import pytest

from rvsim.cache import Cache, CacheConfig, InvalidCacheConfig, Memory
from rvsim.nonblocking import NonBlockingCache, VictimCache

MEM = CacheConfig(0, 0, 0, hit_latency=80, bus_latency=20)
L1 = CacheConfig(256, 16, 2, hit_latency=3)
DIRECT = CacheConfig(32, 16, 1, hit_latency=3)

MISS_EXTRA = MEM.bus_latency + MEM.hit_latency


def test_miss_is_hidden_by_mshr():
    cache = NonBlockingCache(L1, 1, Memory(MEM))
    assert cache.read(0, 1) == L1.hit_latency
    assert cache.hit_under_miss == 1
    assert cache.conflict_cycles(0) == L1.hit_latency + MISS_EXTRA


def test_access_to_pending_block_stalls():
    cache = NonBlockingCache(L1, 1, Memory(MEM))
    cache.read(0, 1)
    pending = cache.conflict_cycles(0)
    assert cache.read(0, 1) == L1.hit_latency + pending
    assert cache.read_count == 2
    assert cache.read_miss_count == 1


def test_next_clock_counts_down_and_clears():
    cache = NonBlockingCache(L1, 1, Memory(MEM))
    cache.read(0, 1)
    before = cache.conflict_cycles(0)
    cache.next_clock(10)
    assert cache.conflict_cycles(0) == before - 10
    cache.next_clock(before)
    assert cache.conflict_cycles(0) == 0
    assert cache.read(0, 1) == L1.hit_latency


def test_busy_mshrs_fall_back_to_blocking():
    cache = NonBlockingCache(L1, 1, Memory(MEM))
    cache.read(0, 1)
    assert cache.read(16, 1) == L1.hit_latency + MISS_EXTRA
    assert cache.hit_under_miss == 1


def test_without_mshrs_matches_blocking_cache():
    plain = Cache(L1, Memory(MEM))
    nonblocking = NonBlockingCache(L1, 0, Memory(MEM))
    trace = [0, 16, 0, 512, 1024, 0, 48]
    assert [nonblocking.read(a, 1) for a in trace] == [plain.read(a, 1) for a in trace]
    assert nonblocking.read_miss_count == plain.read_miss_count


def test_write_miss_uses_mshr():
    cache = NonBlockingCache(L1, 2, Memory(MEM))
    assert cache.write(0, 1) == L1.hit_latency
    assert cache.write_miss_count == 1
    assert cache.conflict_cycles(0) > 0


def test_nonblocking_invalid_config():
    with pytest.raises(InvalidCacheConfig):
        NonBlockingCache(CacheConfig(64, 16, 8), 1, Memory(MEM))


def test_victim_buffer_recovers_conflicting_line():
    cache = VictimCache(DIRECT, 2, Memory(MEM))
    cache.read(0, 1)
    cache.read(32, 1)
    assert cache.read(0, 1) == DIRECT.hit_latency
    assert cache.victim_hit_count == 1
    assert cache.read_miss_count == 2


def test_without_victim_buffer_conflicts_miss():
    cache = VictimCache(DIRECT, 0, Memory(MEM))
    cache.read(0, 1)
    cache.read(32, 1)
    assert cache.read(0, 1) == DIRECT.hit_latency + MISS_EXTRA
    assert cache.victim_hit_count == 0
    assert cache.read_miss_count == 3


def test_victim_cache_plain_hit():
    cache = VictimCache(DIRECT, 2, Memory(MEM))
    cache.read(0, 1)
    assert cache.read(0, 1) == DIRECT.hit_latency
    assert cache.victim_hit_count == 0
    assert cache.miss_rate() == 0.5