"""Metrics recorder for cache operations.

Records are buffered in memory and written to the durable tier in batches.
Each record carries an expires_at stamp so the periodic cleanup path prunes
old metrics the same way it prunes expired cache entries.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set, TYPE_CHECKING

from crm_cache.core.clock import Clock, epoch_ms
from crm_cache.core.logging import get_logger
from crm_cache.models.cache import MetricRecord

if TYPE_CHECKING:
    from crm_cache.core.config import Settings
    from crm_cache.core.database import Database

logger = get_logger(__name__)


class MetricsRecorder:
    """Append-only store of timed operation records with windowed aggregation."""

    def __init__(self, database: "Database", settings: "Settings", clock: Clock = epoch_ms):
        self.database = database
        self.clock = clock
        self.ttl_ms = settings.metrics_ttl_ms
        self.flush_size = settings.metrics_flush_size
        self.flush_interval = settings.metrics_flush_interval
        self._buffer: List[MetricRecord] = []
        self._flush_tasks: Set[asyncio.Task] = set()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def record(self, operation: str, duration: float, success: bool,
               metadata: Optional[Dict[str, Any]] = None) -> None:
        """Buffer one record. Never raises; a full buffer schedules a background flush."""
        try:
            now = self.clock()
            self._buffer.append(MetricRecord(
                operation=operation,
                duration=float(duration),
                success=bool(success),
                timestamp=now,
                expires_at=now + self.ttl_ms,
                meta=metadata or {},
            ))
            if len(self._buffer) >= self.flush_size:
                self._schedule_flush()
        except Exception as e:
            logger.warning("Failed to record metric", operation=operation, error=str(e))

    def _schedule_flush(self) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self.flush())
        except RuntimeError:
            # No running loop; the buffer is flushed on the next explicit flush
            return
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def flush(self) -> int:
        """Write buffered records. Returns the number written; failed batches are dropped."""
        if not self._buffer:
            return 0
        batch, self._buffer = self._buffer, []
        try:
            await self.database.add_metrics(batch)
            return len(batch)
        except Exception as e:
            logger.warning("Failed to flush metrics", dropped=len(batch), error=str(e))
            return 0

    async def get_metrics(self, time_range_ms: int = 3_600_000) -> Dict[str, Dict[str, Any]]:
        """Aggregate records newer than now - time_range_ms, grouped by operation."""
        try:
            await self.flush()
            since = self.clock() - time_range_ms
            records = await self.database.get_metrics_since(since)
        except Exception as e:
            logger.error("Failed to get metrics", error=str(e))
            return {}

        by_operation: Dict[str, Dict[str, Any]] = {}
        for record in records:
            stats = by_operation.setdefault(record.operation, {
                "count": 0,
                "total_duration": 0.0,
                "success_count": 0,
                "failure_count": 0,
            })
            stats["count"] += 1
            stats["total_duration"] += record.duration
            if record.success:
                stats["success_count"] += 1
            else:
                stats["failure_count"] += 1

        for stats in by_operation.values():
            stats["avg_duration"] = stats["total_duration"] / stats["count"]
            stats["success_rate"] = stats["success_count"] / stats["count"]

        return by_operation

    async def prune(self) -> int:
        """Delete records whose TTL has passed."""
        try:
            return await self.database.delete_expired_metrics(self.clock())
        except Exception as e:
            logger.warning("Failed to prune metrics", error=str(e))
            return 0

    # ============================================================================
    # Lifecycle
    # ============================================================================

    async def startup(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._flush_loop())
        logger.info("Metrics recorder started", flush_interval=self.flush_interval)

    async def shutdown(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)
        await self.flush()
        logger.info("Metrics recorder stopped")

    async def _flush_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.flush_interval)
            await self.flush()
