import pytest

from rvsim.cache import CacheConfig, Memory
from rvsim.combined import CombinedCache
from rvsim.prefetch import NextLinePrefetchCache

MEM = CacheConfig(0, 0, 0, hit_latency=10, bus_latency=2)
CFG = CacheConfig(256, 16, 2, hit_latency=1, bus_latency=0)


def make(mshrs=2, prefetch=2):
    return CombinedCache(CFG, mshrs, prefetch, Memory(MEM))


def test_miss_is_hidden_by_free_mshr():
    cache = make()
    assert cache.read(0, 1) == CFG.hit_latency
    assert cache.hit_under_miss == 1
    assert cache.read_miss_count == 1


def test_access_to_pending_block_waits():
    cache = make()
    cache.read(0, 1)
    pending = cache.conflict_cycles(0)
    assert pending > 0
    assert cache.read(0, 1) == CFG.hit_latency + pending
    assert cache.read_count == 2
    assert cache.read_miss_count == 1


def test_next_clock_releases_mshr():
    cache = make()
    cache.read(0, 1)
    cache.next_clock(1000)
    assert cache.conflict_cycles(0) == 0
    assert all(not m.valid for m in cache.mshrs)
    assert cache.read(0, 1) == CFG.hit_latency


def test_miss_prefetches_following_lines():
    cache = make(prefetch=2)
    cache.read(0, 1)
    assert cache.total_prefetch_count == 2
    assert cache.read(CFG.block_size, 1) == CFG.hit_latency
    assert cache.prefetch_hit_count == 1
    assert cache.prefetch_cover_count == 1
    cache.read(CFG.block_size, 1)
    assert cache.prefetch_hit_count == 1
    assert cache.prefetch_cover_count == 2


def test_without_mshrs_latency_matches_next_line_cache():
    combined = make(mshrs=0, prefetch=2)
    plain = NextLinePrefetchCache(CFG, 2, Memory(MEM))
    assert combined.read(0, 1) == plain.read(0, 1)
    assert combined.read(0, 1) == plain.read(0, 1)
    assert combined.write(4096, 1) == plain.write(4096, 1)


def test_write_miss_uses_mshr_and_prefetches():
    cache = make()
    assert cache.write(0, 1) == CFG.hit_latency
    assert cache.write_miss_count == 1
    assert cache.hit_under_miss == 1
    assert cache.total_prefetch_count == 2


def test_pending_access_does_not_prefetch():
    cache = make()
    cache.read(0, 1)
    before = cache.total_prefetch_count
    cache.read(0, 1)
    assert cache.total_prefetch_count == before


def test_extra_info_reports_prefetch_counts():
    cache = make(prefetch=2)
    cache.read(0, 1)
    info = cache.extra_info()
    assert "Prefetch count: 2" in info
    assert "Prefetch hit count: 0" in info


@pytest.mark.parametrize("mshrs", [1, 3])
def test_mshrs_are_limited(mshrs):
    cache = make(mshrs=mshrs, prefetch=0)
    for block in range(mshrs + 2):
        cache.read(block * 4096, 1)
    assert cache.hit_under_miss == mshrs