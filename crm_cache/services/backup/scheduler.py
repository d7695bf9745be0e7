"""Timers driving the backup service.

- Auto backup: one full backup after a short settle delay, then every
  backup_auto_interval seconds.
- Retention: cleanup_old_backups() every backup_cleanup_interval seconds.
- Incremental debounce: changed keys accumulate; each new change restarts a
  backup_incremental_delay timer, and when it fires the whole set is drained
  into one incremental backup.

Failures are logged and the loops wait for their next tick.
"""

import asyncio
from typing import Dict, List, Optional, TYPE_CHECKING

from crm_cache.core.clock import iso_from_ms
from crm_cache.core.logging import get_logger

if TYPE_CHECKING:
    from crm_cache.core.config import Settings
    from .service import BackupRecoveryService

logger = get_logger(__name__)


class BackupScheduler:
    """Owns the background tasks of one BackupRecoveryService."""

    def __init__(self, service: "BackupRecoveryService", settings: "Settings"):
        self.service = service
        self.auto_interval = settings.backup_auto_interval
        self.initial_delay = settings.backup_initial_delay
        self.incremental_delay = settings.backup_incremental_delay
        self.cleanup_interval = settings.backup_cleanup_interval
        self.last_auto_backup_ms: Optional[int] = None

        self._running = False
        self._tasks: List[asyncio.Task] = []
        # Insertion-ordered set of pending changed keys
        self._changed_keys: Dict[str, None] = {}
        self._incremental_task: Optional[asyncio.Task] = None
        self._incremental_runs: set = set()

    @property
    def auto_backup_enabled(self) -> bool:
        return self._running and self.auto_interval > 0

    @property
    def pending_changes(self) -> List[str]:
        return list(self._changed_keys)

    def mark_auto_backup(self, now_ms: int) -> None:
        self.last_auto_backup_ms = now_ms

    def next_auto_backup_time(self, now_ms: int) -> str:
        base = self.last_auto_backup_ms if self.last_auto_backup_ms is not None else now_ms
        return iso_from_ms(base + int(self.auto_interval * 1000))

    async def start(self) -> None:
        if self._running:
            logger.warning("Backup scheduler already running")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._auto_backup_loop()),
            asyncio.create_task(self._retention_loop()),
        ]
        logger.info("Backup scheduler started",
                    auto_interval=self.auto_interval,
                    initial_delay=self.initial_delay,
                    cleanup_interval=self.cleanup_interval)

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks)
        if self._incremental_task is not None:
            tasks.append(self._incremental_task)
            self._incremental_task = None
        tasks.extend(self._incremental_runs)

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        if self._changed_keys:
            logger.warning("Dropping pending incremental changes on shutdown",
                           changed_keys=list(self._changed_keys))
            self._changed_keys.clear()
        logger.info("Backup scheduler stopped")

    # ============================================================================
    # Incremental debounce
    # ============================================================================

    def schedule_incremental(self, changed_key: str) -> None:
        """Record a changed key and restart the debounce timer."""
        self._changed_keys[changed_key] = None

        if self._incremental_task is not None and not self._incremental_task.done():
            self._incremental_task.cancel()

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Changed outside the event loop; the key waits for the next timer
            self._incremental_task = None
            return
        self._incremental_task = loop.create_task(self._incremental_after_delay())

    async def _incremental_after_delay(self) -> None:
        await asyncio.sleep(self.incremental_delay)
        # Detach so a change arriving mid-backup starts a new timer instead of cancelling this one
        self._incremental_task = None
        current = asyncio.current_task()
        self._incremental_runs.add(current)
        try:
            await self.flush_incremental()
        finally:
            self._incremental_runs.discard(current)

    async def flush_incremental(self) -> Optional[dict]:
        """Drain accumulated keys into one incremental backup now."""
        if not self._changed_keys:
            return None
        keys = list(self._changed_keys)
        self._changed_keys.clear()
        result = await self.service.create_incremental_backup(keys)
        if not result["success"]:
            logger.error("Scheduled incremental backup failed", error=result.get("error"))
        return result

    # ============================================================================
    # Loops
    # ============================================================================

    async def _auto_backup_loop(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while self._running:
            try:
                result = await self.service.create_auto_backup()
                if result["success"]:
                    logger.info("Automatic backup completed successfully", backup_id=result["backup_id"])
                else:
                    logger.error("Automatic backup failed", error=result.get("error"))
            except Exception as e:
                logger.error("Automatic backup failed", error=str(e))
            await asyncio.sleep(self.auto_interval)

    async def _retention_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.service.cleanup_old_backups()
            except Exception as e:
                logger.error("Backup retention cleanup failed", error=str(e))
