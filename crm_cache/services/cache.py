"""Two-tier cache: bounded in-memory LRU tier over a TTL-expiring durable tier.

Reads go memory first, then durable (promoting hits into memory). Writes go
memory first, then durable. The two tiers are not transactional: a failed
durable write leaves memory ahead until the next read or cleanup.

Every public coroutine degrades to a safe default (False, None, 0, {}) on a
storage error. Cache unavailability costs performance, never correctness.
"""

import asyncio
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union, TYPE_CHECKING

from crm_cache.constants import CALCULATION_KEY_PREFIX, METRIC_CACHE_GET, TAG_CALCULATIONS
from crm_cache.core.clock import Clock, epoch_ms
from crm_cache.core.compression import compress_value, decompress_value
from crm_cache.core.logging import get_logger, log_cache_operation
from crm_cache.models.cache import CacheRecord

if TYPE_CHECKING:
    from crm_cache.core.config import Settings
    from crm_cache.core.database import Database
    from crm_cache.services.metrics import MetricsRecorder

logger = get_logger(__name__)

TagsArg = Union[str, Iterable[str], None]


def normalize_tags(tags: TagsArg) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        return [tags]
    return list(dict.fromkeys(tags))


def compile_key_pattern(pattern: str) -> "re.Pattern[str]":
    """Translate a key pattern where '*' is the only wildcard into an anchored regex."""
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


@dataclass
class CacheEntry:
    """In-memory copy of a cached value plus its bookkeeping (epoch ms)."""
    key: str
    value: Any
    created_at: int
    last_accessed: int
    expires_at: int
    access_count: int = 0
    tags: List[str] = field(default_factory=list)
    priority: int = 1  # informational; eviction is pure LRU
    compressed: bool = False

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def decoded_value(self) -> Any:
        return decompress_value(self.value) if self.compressed else self.value

    def snapshot(self) -> Dict[str, Any]:
        return {
            "value": self.decoded_value(),
            "tags": list(self.tags),
            "priority": self.priority,
            "compressed": self.compressed,
        }

    def to_record(self) -> CacheRecord:
        return CacheRecord(
            key=self.key,
            value=self.value,
            created_at=self.created_at,
            last_accessed=self.last_accessed,
            expires_at=self.expires_at,
            access_count=self.access_count,
            tags=list(self.tags),
            priority=self.priority,
            compressed=self.compressed,
        )

    @classmethod
    def from_record(cls, record: CacheRecord) -> "CacheEntry":
        return cls(
            key=record.key,
            value=record.value,
            created_at=record.created_at,
            last_accessed=record.last_accessed,
            expires_at=record.expires_at,
            access_count=record.access_count,
            tags=list(record.tags or []),
            priority=record.priority,
            compressed=record.compressed,
        )


@dataclass
class CacheStats:
    """Operation counters since startup or the last clear()."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def reset(self) -> None:
        self.hits = self.misses = self.sets = self.deletes = self.evictions = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class CacheManager:
    """Async two-tier cache with TTL expiry, tag invalidation and LRU eviction.

    The in-memory tier is bounded by ``cache_max_memory_entries`` and evicts the
    least recently accessed entry after every insert. The durable tier is only
    reclaimed by TTL, either lazily on read or by cleanup().
    """

    def __init__(
        self,
        database: "Database",
        settings: "Settings",
        metrics: Optional["MetricsRecorder"] = None,
        clock: Clock = epoch_ms,
    ):
        self.database = database
        self.metrics = metrics
        self.clock = clock
        self.max_memory_size = settings.cache_max_memory_entries
        self.default_ttl = settings.cache_default_ttl_ms
        self.stats = CacheStats()
        self._memory: "OrderedDict[str, CacheEntry]" = OrderedDict()
        # Fire-and-forget access-bookkeeping writes, newest per key
        self._pending_writes: Dict[str, asyncio.Task] = {}
        # Durable reads in flight: key -> [reader count, write generation]
        self._durable_reads: Dict[str, List[int]] = {}

    # ============================================================================
    # Core operations
    # ============================================================================

    async def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[int] = None,
        tags: TagsArg = None,
        priority: int = 1,
        compress: bool = False,
    ) -> bool:
        """Store a value in both tiers. ttl is in milliseconds."""
        try:
            now = self.clock()
            ttl = self.default_ttl if ttl is None else ttl
            entry = CacheEntry(
                key=key,
                value=compress_value(value) if compress else value,
                created_at=now,
                last_accessed=now,
                expires_at=now + ttl,
                tags=normalize_tags(tags),
                priority=priority,
                compressed=compress,
            )

            self._memory[key] = entry
            self._memory.move_to_end(key)
            self._invalidate_reads(key)
            self._enforce_memory_limit()

            await self._await_pending_write(key)
            await self.database.put_cache_entry(entry.to_record())

            self.stats.sets += 1
            log_cache_operation(logger, "set", key, ttl=ttl, tags=entry.tags)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def get(self, key: str) -> Optional[Any]:
        """Read-through lookup. Returns None on miss, expiry or storage error."""
        start = time.perf_counter()
        try:
            entry = self._memory.get(key)

            if entry is None:
                entry = await self._read_through(key)

            if entry is None:
                return self._miss(key, start)

            now = self.clock()
            if entry.is_expired(now):
                await self.delete(key)
                return self._miss(key, start, expired=True)

            entry.access_count += 1
            entry.last_accessed = now
            self._memory.move_to_end(key)
            self._enforce_memory_limit()
            self._schedule_access_write(entry)

            self.stats.hits += 1
            self._record_metric(start, True, key)
            log_cache_operation(logger, "get", key, hit=True)
            return entry.decoded_value()

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return self._miss(key, start)

    async def _read_through(self, key: str) -> Optional[CacheEntry]:
        """Load a durable record and promote it, unless the key changed during the read.

        A set, delete or clear that lands while the durable read is awaited
        wins: the resident entry (or a miss) is returned and nothing stale is
        promoted.
        """
        state = self._durable_reads.setdefault(key, [0, 0])
        state[0] += 1
        generation = state[1]
        try:
            record = await self.database.get_cache_entry(key)
        finally:
            state[0] -= 1
            if state[0] == 0:
                self._durable_reads.pop(key, None)

        resident = self._memory.get(key)
        if state[1] != generation or resident is not None:
            return resident
        if record is None:
            return None

        entry = CacheEntry.from_record(record)
        self._memory[key] = entry
        return entry

    def _invalidate_reads(self, key: str) -> None:
        state = self._durable_reads.get(key)
        if state is not None:
            state[1] += 1

    def _miss(self, key: str, start: float, expired: bool = False) -> None:
        self.stats.misses += 1
        self._record_metric(start, False, key)
        log_cache_operation(logger, "get", key, hit=False, expired=expired)
        return None

    async def delete(self, key: str) -> bool:
        """Remove a key from both tiers."""
        try:
            self._memory.pop(key, None)
            self._invalidate_reads(key)
            await self._await_pending_write(key)
            await self.database.delete_cache_entry(key)
            self.stats.deletes += 1
            log_cache_operation(logger, "delete", key)
            return True

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def delete_by_tags(self, tags: TagsArg) -> int:
        """Remove every entry sharing a tag with ``tags``. Returns the count removed.

        Not indexed: scans every durable record, O(total entries).
        """
        wanted = set(normalize_tags(tags))
        try:
            records = await self.database.get_all_cache_entries()
            keys = [r.key for r in records if wanted.intersection(r.tags or [])]
            if not keys:
                return 0

            for key in keys:
                self._memory.pop(key, None)
                self._invalidate_reads(key)
                await self._await_pending_write(key)
            await self.database.delete_cache_entries(keys)

            self.stats.deletes += len(keys)
            logger.info("Cache entries invalidated by tag", tags=sorted(wanted), count=len(keys))
            return len(keys)

        except Exception as e:
            logger.error("Cache delete by tags failed", tags=sorted(wanted), error=str(e))
            return 0

    async def mget(self, keys: Sequence[str]) -> Dict[str, Any]:
        values = await asyncio.gather(*(self.get(key) for key in keys))
        return dict(zip(keys, values))

    async def mset(self, entries: Dict[str, Any], **options: Any) -> bool:
        """Set every entry with the same options. True only if all succeeded."""
        results = await asyncio.gather(
            *(self.set(key, value, **options) for key, value in entries.items())
        )
        return all(results)

    async def exists(self, key: str) -> bool:
        """True if a live entry exists in either tier. No access bookkeeping."""
        try:
            entry = self._memory.get(key)
            if entry is not None:
                return not entry.is_expired(self.clock())

            record = await self.database.get_cache_entry(key)
            return record is not None and self.clock() < record.expires_at

        except Exception as e:
            logger.error("Cache exists check failed", key=key, error=str(e))
            return False

    async def keys(self, pattern: str = "*") -> List[str]:
        """Durable-tier keys matching a '*' wildcard pattern."""
        try:
            all_keys = await self.database.get_cache_keys()
            if pattern == "*":
                return all_keys

            regex = compile_key_pattern(pattern)
            return [key for key in all_keys if regex.match(key)]

        except Exception as e:
            logger.error("Cache keys failed", pattern=pattern, error=str(e))
            return []

    async def entries(self, pattern: str = "*",
                      exclude_prefixes: Sequence[str] = (),
                      tag: Optional[str] = None,
                      with_meta: bool = False) -> Dict[str, Any]:
        """Snapshot of live entries as {key: value} without touching stats.

        Values come from the memory tier when resident, since the durable copy
        may lag behind it. With ``with_meta`` each value is wrapped as
        {"value", "tags", "priority", "compressed"} so set() can recreate it.
        """
        try:
            now = self.clock()
            regex = None if pattern == "*" else compile_key_pattern(pattern)
            snapshot: Dict[str, Any] = {}

            for record in await self.database.get_all_cache_entries():
                key = record.key
                if exclude_prefixes and key.startswith(tuple(exclude_prefixes)):
                    continue
                if regex is not None and not regex.match(key):
                    continue
                if tag is not None and tag not in (record.tags or []):
                    continue

                entry = self._memory.get(key) or CacheEntry.from_record(record)
                if entry.is_expired(now):
                    continue
                snapshot[key] = entry.snapshot() if with_meta else entry.decoded_value()

            return snapshot

        except Exception as e:
            logger.error("Cache snapshot failed", pattern=pattern, error=str(e))
            return {}

    async def clear(self) -> bool:
        """Empty both tiers and reset counters."""
        try:
            self._memory.clear()
            for state in self._durable_reads.values():
                state[1] += 1
            await self._await_all_pending_writes()
            await self.database.clear_cache_entries()
            self.stats.reset()
            logger.info("Cache cleared")
            return True

        except Exception as e:
            logger.error("Cache clear failed", error=str(e))
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """Counters, tier sizes and hit rate."""
        memory_size = len(self._memory)
        try:
            db_size = await self.database.count_cache_entries()
        except Exception as e:
            logger.error("Cache stats failed, reporting empty durable tier", error=str(e))
            db_size = 0

        return {
            **self.stats.to_dict(),
            "memory_size": memory_size,
            "db_size": db_size,
            "hit_rate": self.stats.hit_rate,
            "memory_usage": f"{memory_size}/{self.max_memory_size}",
        }

    async def cleanup(self) -> int:
        """Drop expired entries from both tiers. Returns distinct keys evicted."""
        now = self.clock()
        removed = set()

        for key, entry in list(self._memory.items()):
            if entry.is_expired(now):
                del self._memory[key]
                removed.add(key)

        try:
            removed.update(await self.database.delete_expired_cache_entries(now))
        except Exception as e:
            logger.error("Cache cleanup failed", error=str(e))

        self.stats.evictions += len(removed)
        if removed:
            logger.info("Cache cleanup completed", evicted=len(removed))
        return len(removed)

    # ============================================================================
    # Calculations and metrics
    # ============================================================================

    async def cache_calculation(self, sqft: float, result: Dict[str, Any]) -> bool:
        """Memoize a vent calculation for one hour and append it to the history table."""
        now = self.clock()
        payload = {"sqft": sqft, **result, "timestamp": now}
        stored, _ = await asyncio.gather(
            self.set(f"{CALCULATION_KEY_PREFIX}{sqft}", payload,
                     ttl=3_600_000, tags=[TAG_CALCULATIONS]),
            self._append_calculation(sqft, payload, now),
        )
        return stored

    async def _append_calculation(self, sqft: float, payload: Dict[str, Any], now: int) -> None:
        try:
            await self.database.add_calculation(sqft, payload, now)
        except Exception as e:
            logger.warning("Failed to append calculation history", sqft=sqft, error=str(e))

    async def get_cached_calculation(self, sqft: float) -> Optional[Dict[str, Any]]:
        return await self.get(f"{CALCULATION_KEY_PREFIX}{sqft}")

    async def get_calculation_history(self, sqft: Optional[float] = None) -> List[Dict[str, Any]]:
        """Every calculation ever cached, newest first. Outlives the one-hour memo."""
        try:
            records = await self.database.get_calculations(sqft)
        except Exception as e:
            logger.error("Failed to read calculation history", sqft=sqft, error=str(e))
            return []
        return [
            {"sqft": record.sqft, "result": record.result, "timestamp": record.timestamp}
            for record in records
        ]

    async def get_metrics(self, time_range_ms: int = 3_600_000) -> Dict[str, Dict[str, Any]]:
        if self.metrics is None:
            return {}
        return await self.metrics.get_metrics(time_range_ms)

    def _record_metric(self, start: float, success: bool, key: str) -> None:
        if self.metrics is None:
            return
        duration = (time.perf_counter() - start) * 1000
        self.metrics.record(METRIC_CACHE_GET, duration, success, {"key": key})

    # ============================================================================
    # Memory tier bookkeeping
    # ============================================================================

    def _enforce_memory_limit(self) -> None:
        """Evict least recently accessed entries until the memory bound holds."""
        overflow = len(self._memory) - self.max_memory_size
        if overflow <= 0:
            return

        # Stable sort: ties keep recency order from the OrderedDict
        by_age = sorted(self._memory.items(), key=lambda item: item[1].last_accessed)
        for key, _ in by_age[:overflow]:
            del self._memory[key]
            self.stats.evictions += 1
            log_cache_operation(logger, "evict", key)

    def _schedule_access_write(self, entry: CacheEntry) -> None:
        previous = self._pending_writes.get(entry.key)
        task = asyncio.get_running_loop().create_task(self._write_access(entry, previous))
        self._pending_writes[entry.key] = task

        def _forget(done: asyncio.Task, key: str = entry.key) -> None:
            if self._pending_writes.get(key) is done:
                del self._pending_writes[key]

        task.add_done_callback(_forget)

    async def _write_access(self, entry: CacheEntry, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await previous
        # Skip if the entry was replaced or removed since the read
        if self._memory.get(entry.key) is not entry:
            return
        try:
            await self.database.put_cache_entry(entry.to_record())
        except Exception as e:
            logger.warning("Failed to update cache stats", key=entry.key, error=str(e))

    async def _await_pending_write(self, key: str) -> None:
        task = self._pending_writes.pop(key, None)
        if task is not None and not task.done():
            await task

    async def _await_all_pending_writes(self) -> None:
        tasks = list(self._pending_writes.values())
        self._pending_writes.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ============================================================================
    # Lifecycle
    # ============================================================================

    async def flush(self) -> None:
        """Wait for background durable writes and flush buffered metrics."""
        await self._await_all_pending_writes()
        if self.metrics is not None:
            await self.metrics.flush()

    async def startup(self) -> None:
        logger.info("Cache manager initialized",
                    max_memory_size=self.max_memory_size,
                    default_ttl_ms=self.default_ttl)

    async def shutdown(self) -> None:
        await self.flush()
        self._memory.clear()
        logger.info("Cache manager shut down")

    @property
    def memory_keys(self) -> List[str]:
        """Keys currently resident in the memory tier, least recent first."""
        return list(self._memory)
