"""Tests for the two-tier cache engine."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from crm_cache.models.cache import CacheRecord
from crm_cache.services.cache import CacheManager, compile_key_pattern, normalize_tags

from tests.conftest import FailingDatabase, START_MS, make_settings

HOUR_MS = 3_600_000


# ============================================================================
# Helpers
# ============================================================================

def test_normalize_tags_accepts_single_tag_and_drops_duplicates():
    assert normalize_tags(None) == []
    assert normalize_tags("leads") == ["leads"]
    assert normalize_tags(["a", "b", "a"]) == ["a", "b"]


def test_key_pattern_only_star_is_wildcard():
    regex = compile_key_pattern("lead.*")
    assert regex.match("lead.42")
    assert not regex.match("leadX42")
    assert not compile_key_pattern("lead").match("lead:1")


# ============================================================================
# TTL
# ============================================================================

class TestTTL:

    async def test_value_visible_until_expiry_boundary(self, cache, clock, database):
        await cache.set("k", {"v": 1}, ttl=1000)

        clock.advance(999)
        assert await cache.get("k") == {"v": 1}

        clock.advance(1)
        assert await cache.get("k") is None
        assert await database.get_cache_entry("k") is None

    async def test_default_ttl_applies(self, cache, clock, settings):
        await cache.set("k", "v")
        clock.advance(settings.cache_default_ttl_ms - 1)
        assert await cache.get("k") == "v"
        clock.advance(1)
        assert await cache.get("k") is None

    async def test_exists_respects_expiry_without_bookkeeping(self, cache, clock):
        await cache.set("k", 1, ttl=10)
        assert await cache.exists("k") is True
        assert cache.stats.hits == 0

        clock.advance(10)
        assert await cache.exists("k") is False
        assert await cache.exists("missing") is False


# ============================================================================
# LRU eviction
# ============================================================================

class TestLRU:

    @pytest.fixture
    async def small_cache(self, tmp_path, database, clock):
        settings = make_settings(tmp_path, cache_max_memory_entries=3)
        manager = CacheManager(database, settings, clock=clock)
        yield manager
        await manager.shutdown()

    async def test_keeps_most_recently_inserted(self, small_cache, clock):
        for key in ["a", "b", "c", "d", "e"]:
            clock.advance(1)
            await small_cache.set(key, key)

        assert small_cache.memory_keys == ["c", "d", "e"]
        assert small_cache.stats.evictions == 2

    async def test_ties_evict_in_insertion_order(self, small_cache):
        for key in ["a", "b", "c", "d"]:
            await small_cache.set(key, key)

        assert small_cache.memory_keys == ["b", "c", "d"]

    async def test_access_protects_from_eviction(self, small_cache, clock):
        for key in ["a", "b", "c"]:
            clock.advance(1)
            await small_cache.set(key, key)

        clock.advance(1)
        assert await small_cache.get("a") == "a"

        clock.advance(1)
        await small_cache.set("d", "d")

        assert "a" in small_cache.memory_keys
        assert "b" not in small_cache.memory_keys

    async def test_evicted_entries_stay_durable(self, small_cache, clock):
        for key in ["a", "b", "c", "d"]:
            clock.advance(1)
            await small_cache.set(key, key)

        assert "a" not in small_cache.memory_keys
        assert await small_cache.get("a") == "a"
        assert "a" in small_cache.memory_keys


# ============================================================================
# Read-through promotion
# ============================================================================

async def test_durable_only_entry_is_promoted(cache, database):
    await database.put_cache_entry(CacheRecord(
        key="direct",
        value={"nested": [1, 2, 3]},
        created_at=START_MS,
        last_accessed=START_MS,
        expires_at=START_MS + HOUR_MS,
        tags=["x"],
    ))

    assert await cache.get("direct") == {"nested": [1, 2, 3]}
    assert "direct" in cache.memory_keys

    await cache.flush()
    database.get_cache_entry = AsyncMock(return_value=None)
    assert await cache.get("direct") == {"nested": [1, 2, 3]}
    database.get_cache_entry.assert_not_awaited()


async def test_access_bookkeeping_reaches_durable_tier(cache, database, clock):
    await cache.set("k", "v")
    clock.advance(5)
    await cache.get("k")
    await cache.get("k")
    await cache.flush()

    record = await database.get_cache_entry("k")
    assert record.access_count == 2
    assert record.last_accessed == START_MS + 5


async def test_delete_is_not_undone_by_pending_access_write(cache, database):
    await cache.set("k", "v")
    await cache.get("k")
    await cache.delete("k")
    await cache.flush()

    assert await database.get_cache_entry("k") is None


class TestReadThroughRaces:

    @pytest.fixture
    async def durable_only(self, database):
        await database.put_cache_entry(CacheRecord(
            key="k",
            value="old",
            created_at=START_MS,
            last_accessed=START_MS,
            expires_at=START_MS + HOUR_MS,
        ))
        return "k"

    async def test_set_during_durable_read_wins(self, cache, database, durable_only):
        read, stored = await asyncio.gather(cache.get(durable_only), cache.set(durable_only, "new"))
        await cache.flush()

        assert stored is True
        assert read == "new"
        assert await cache.get(durable_only) == "new"
        assert (await database.get_cache_entry(durable_only)).value == "new"

    async def test_delete_during_durable_read_stays_deleted(self, cache, database, durable_only):
        read, deleted = await asyncio.gather(cache.get(durable_only), cache.delete(durable_only))
        await cache.flush()

        assert deleted is True
        assert read is None
        assert durable_only not in cache.memory_keys
        assert await database.get_cache_entry(durable_only) is None
        assert await cache.get(durable_only) is None

    async def test_clear_during_durable_read_stays_cleared(self, cache, database, durable_only):
        read, cleared = await asyncio.gather(cache.get(durable_only), cache.clear())
        await cache.flush()

        assert cleared is True
        assert read is None
        assert cache.memory_keys == []
        assert await database.count_cache_entries() == 0

    async def test_concurrent_reads_share_one_promoted_entry(self, cache, durable_only):
        first, second = await asyncio.gather(cache.get(durable_only), cache.get(durable_only))
        await cache.flush()

        assert first == second == "old"
        assert cache.memory_keys == [durable_only]
        assert cache._memory[durable_only].access_count == 2
        assert cache._durable_reads == {}


# ============================================================================
# Tags, bulk operations and key listing
# ============================================================================

async def test_delete_by_tags_removes_exactly_tagged_entries(cache):
    await cache.set("a", 1, tags=["x"])
    await cache.set("b", 2, tags=["x", "y"])
    await cache.set("c", 3, tags=["y"])
    await cache.set("d", 4)

    assert await cache.delete_by_tags(["x"]) == 2
    assert await cache.exists("a") is False
    assert await cache.exists("b") is False
    assert await cache.exists("c") is True
    assert await cache.exists("d") is True
    assert await cache.delete_by_tags("nothing") == 0


async def test_mset_and_mget(cache):
    assert await cache.mset({"a": 1, "b": {"two": 2}}, ttl=HOUR_MS, tags="bulk") is True
    assert await cache.mget(["a", "b", "missing"]) == {"a": 1, "b": {"two": 2}, "missing": None}
    assert await cache.delete_by_tags("bulk") == 2


async def test_keys_with_pattern(cache):
    for key in ["lead:1", "lead:2", "job:1"]:
        await cache.set(key, key)

    assert sorted(await cache.keys()) == ["job:1", "lead:1", "lead:2"]
    assert sorted(await cache.keys("lead:*")) == ["lead:1", "lead:2"]
    assert await cache.keys("lead") == []


async def test_entries_snapshot_filters_and_skips_expired(cache, clock):
    await cache.set("backup_x", "skip")
    await cache.set("lead:1", {"name": "A"}, tags=["leads"])
    await cache.set("short", 1, ttl=5)
    clock.advance(5)

    snapshot = await cache.entries(exclude_prefixes=("backup_",))
    assert snapshot == {"lead:1": {"name": "A"}}
    assert await cache.entries(tag="leads") == {"lead:1": {"name": "A"}}
    assert cache.stats.hits == 0


async def test_clear_empties_both_tiers_and_resets_stats(cache, database):
    await cache.set("a", 1)
    await cache.get("a")
    assert await cache.clear() is True

    assert cache.memory_keys == []
    assert await database.count_cache_entries() == 0
    assert cache.stats.to_dict() == {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}


async def test_compressed_values_round_trip(cache, database):
    value = {"notes": "roof " * 500}
    assert await cache.set("big", value, compress=True) is True

    record = await database.get_cache_entry("big")
    assert record.compressed is True
    assert isinstance(record.value, str)

    cache._memory.clear()
    assert await cache.get("big") == value


# ============================================================================
# Stats
# ============================================================================

async def test_stats_consistency(cache):
    for key in ["a", "b", "c"]:
        await cache.set(key, key)
    await cache.get("a")
    await cache.get("b")
    await cache.get("missing")
    await cache.delete("c")

    stats = await cache.get_stats()
    assert stats["sets"] == 3
    assert stats["hits"] == 2
    assert stats["misses"] == 1
    assert stats["deletes"] == 1
    assert stats["hit_rate"] == pytest.approx(2 / 3)
    assert stats["memory_size"] == 2
    assert stats["db_size"] == 2
    assert stats["memory_usage"] == "2/100"


async def test_hit_rate_is_zero_without_reads(cache):
    assert (await cache.get_stats())["hit_rate"] == 0


# ============================================================================
# Cleanup and end-to-end
# ============================================================================

async def test_cleanup_evicts_expired_entries_from_both_tiers(cache, clock, database):
    await cache.set("short", 1, ttl=100)
    await cache.set("long", 2, ttl=HOUR_MS)
    cache._memory.pop("long")

    clock.advance(100)
    assert await cache.cleanup() == 1
    assert cache.stats.evictions == 1
    assert await database.get_cache_keys() == ["long"]


async def test_calculation_expires_lazily(cache, clock):
    await cache.set("calc:2000", {"ridgeVents": 8, "turbineVents": 2},
                    ttl=HOUR_MS, tags=["calculations"])
    assert await cache.get("calc:2000") == {"ridgeVents": 8, "turbineVents": 2}

    deletes = cache.stats.deletes
    clock.advance(HOUR_MS + 1)
    assert await cache.get("calc:2000") is None
    assert cache.stats.deletes == deletes + 1


async def test_calculation_expires_by_periodic_cleanup(cache, clock):
    await cache.set("calc:2000", {"ridgeVents": 8, "turbineVents": 2},
                    ttl=HOUR_MS, tags=["calculations"])

    evictions = cache.stats.evictions
    clock.advance(HOUR_MS + 1)
    await cache.cleanup()
    assert cache.stats.evictions == evictions + 1
    assert await cache.get("calc:2000") is None


async def test_cache_calculation_memoizes_and_records_history(cache, database):
    assert await cache.cache_calculation(2000, {"ridgeVents": 8}) is True

    cached = await cache.get_cached_calculation(2000)
    assert cached["ridgeVents"] == 8
    assert cached["sqft"] == 2000
    assert await cache.entries(tag="calculations") == {"calculation:2000": cached}

    history = await database.get_calculations(2000)
    assert len(history) == 1
    assert history[0].result["ridgeVents"] == 8


async def test_calculation_history_outlives_memo(cache, clock):
    await cache.cache_calculation(2000, {"ridgeVents": 8})
    clock.advance(10)
    await cache.cache_calculation(2000, {"ridgeVents": 9})
    await cache.cache_calculation(1500, {"ridgeVents": 6})

    clock.advance(HOUR_MS + 1)
    assert await cache.get_cached_calculation(2000) is None

    history = await cache.get_calculation_history(2000)
    assert [h["result"]["ridgeVents"] for h in history] == [9, 8]
    assert history[0]["timestamp"] == START_MS + 10
    assert len(await cache.get_calculation_history()) == 3


async def test_get_records_metrics(cache):
    await cache.set("a", 1)
    await cache.get("a")
    await cache.get("missing")

    metrics = await cache.get_metrics()
    assert metrics["cache_get"]["count"] == 2
    assert metrics["cache_get"]["success_count"] == 1
    assert metrics["cache_get"]["failure_count"] == 1


# ============================================================================
# Failure tolerance
# ============================================================================

async def test_failing_durable_tier_never_raises(settings, clock):
    cache = CacheManager(FailingDatabase(), settings, clock=clock)

    assert await cache.set("k", "v") is False
    assert await cache.get("missing") is None
    assert await cache.delete("k") is False
    assert await cache.delete_by_tags("x") == 0
    assert await cache.mget(["missing"]) == {"missing": None}
    assert await cache.mset({"a": 1}) is False
    assert await cache.exists("missing") is False
    assert await cache.keys() == []
    assert await cache.entries() == {}
    assert await cache.clear() is False
    assert await cache.cleanup() == 0
    assert await cache.cache_calculation(1500, {"ridgeVents": 6}) is False
    assert await cache.get_calculation_history() == []
    assert await cache.get_metrics() == {}

    stats = await cache.get_stats()
    assert stats["db_size"] == 0
    assert stats["misses"] == 2

    await cache.shutdown()
