"""Periodic expiry sweep over the cache and metric tables.

Lazy expiry on get() only reclaims keys that are read again; this sweep
reclaims the rest. The interval comes from ``cache_cleanup_interval``.
"""

import asyncio
from typing import Dict, Optional, TYPE_CHECKING

from crm_cache.core.logging import get_logger

if TYPE_CHECKING:
    from crm_cache.core.config import Settings
    from crm_cache.services.cache import CacheManager
    from crm_cache.services.metrics import MetricsRecorder

logger = get_logger(__name__)


class CleanupService:
    """Background task that evicts expired cache entries and prunes old metrics."""

    def __init__(self, cache: "CacheManager", metrics: "MetricsRecorder", settings: "Settings"):
        self.cache = cache
        self.metrics = metrics
        self.interval = settings.cache_cleanup_interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._sweep_forever())
        logger.info("Expiry sweep scheduled", interval_seconds=self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Expiry sweep stopped")

    async def _sweep_forever(self) -> None:
        # First sweep waits one interval; startup has nothing expired yet
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Expiry sweep failed", error=str(e))

    async def run_once(self) -> Dict[str, int]:
        """Sweep both tables now. Returns counts removed per table."""
        removed = {
            "expired_cache": await self.cache.cleanup(),
            "expired_metrics": await self.metrics.prune(),
        }
        if any(removed.values()):
            logger.info("Expiry sweep removed records", **removed)
        return removed
