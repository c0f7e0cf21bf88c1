"""
Result cache: two tiers, TTL expiry, graceful degradation
"""

import time
from unittest.mock import patch

import pytest

from forge3d.exceptions import CacheUnavailable
from forge3d.jobs.result_cache import ResultCache
from forge3d.jobs.types import CachedResult, ResultFile


def make_result(fp="fp-1"):
    return CachedResult(
        fingerprint=fp,
        result_files=[ResultFile(type="obj", url="https://cdn.test/cube.obj")],
        thumbnail_url="https://cdn.test/thumb.png",
        source_job_id="job-1",
    )


@pytest.fixture
def cache(config):
    return ResultCache(config)


@pytest.mark.asyncio
async def test_miss_then_hit(cache):
    assert await cache.lookup("fp-1") is None

    await cache.store("fp-1", make_result())
    hit = await cache.lookup("fp-1")

    assert hit == make_result()
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5


@pytest.mark.asyncio
async def test_mirror_survives_restart_and_rewarms_memory(config, cache):
    await cache.store("fp-1", make_result())

    fresh = ResultCache(config)
    assert len(fresh.memory) == 0

    assert await fresh.lookup("fp-1") == make_result()
    assert fresh.stats()["mirror_hits"] == 1
    assert len(fresh.memory) == 1


@pytest.mark.asyncio
async def test_expired_entries_are_misses(cache):
    await cache.store("fp-1", make_result(), ttl=60)

    later = time.time() + 120
    with patch("forge3d.jobs.result_cache.time.time", return_value=later):
        assert await cache.lookup("fp-1") is None
        assert not (cache.mirror.cache_dir / "fp-1.json").exists()


@pytest.mark.asyncio
async def test_cleanup_expired_clears_both_tiers(cache):
    await cache.store("old", make_result("old"), ttl=60)
    await cache.store("new", make_result("new"), ttl=3600)

    later = time.time() + 120
    with patch("forge3d.jobs.result_cache.time.time", return_value=later):
        removed = await cache.cleanup_expired()

    # one from memory, one from the mirror
    assert removed == 2
    assert await cache.lookup("new") is not None
    assert await cache.lookup("old") is None


@pytest.mark.asyncio
async def test_invalidate(cache):
    await cache.store("fp-1", make_result())
    assert await cache.invalidate("fp-1") is True
    assert await cache.lookup("fp-1") is None
    assert await cache.invalidate("fp-1") is False


@pytest.mark.asyncio
async def test_lru_eviction_bounds_memory(config):
    config["FORGE_CACHE_MAX_ENTRIES"] = 2
    cache = ResultCache(config)

    for fp in ("a", "b", "c"):
        await cache.store(fp, make_result(fp))

    assert len(cache.memory) == 2
    assert "a" not in cache.memory.cache
    assert cache.stats()["evictions"] == 1


@pytest.mark.asyncio
async def test_mirror_read_failure_degrades_to_miss(cache):
    with patch.object(cache.mirror, "read", side_effect=CacheUnavailable("mirror down")):
        assert await cache.lookup("fp-1") is None
    assert cache.stats()["failures"] == 1


@pytest.mark.asyncio
async def test_mirror_write_failure_is_skipped(cache):
    with patch.object(cache.mirror, "write", side_effect=CacheUnavailable("mirror down")):
        await cache.store("fp-1", make_result())

    # fast tier still serves the entry
    assert await cache.lookup("fp-1") == make_result()
    assert cache.stats()["failures"] == 1


@pytest.mark.asyncio
async def test_corrupt_mirror_document_is_a_miss(cache):
    (cache.mirror.cache_dir / "fp-x.json").write_text("not json")
    assert await cache.lookup("fp-x") is None
