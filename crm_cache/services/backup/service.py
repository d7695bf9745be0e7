"""Backup and recovery service built on the durable cache tier.

Pipeline for every backup:
    collect -> seal (size + checksum) -> compress if large -> encrypt -> store -> register

Restore reverses it and fails closed: nothing is written to live state
until the payload decrypts, decompresses and passes the checksum, and a
pre_restore_* full backup has been stored as a rollback point.

Public coroutines never raise. They return {"success": True, ...} or
{"success": False, "error": ...}.
"""

import asyncio
import inspect
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union, TYPE_CHECKING

from crm_cache.constants import (
    AUTO_PREFIX,
    BACKUP_FORMAT_VERSION,
    BACKUP_KEY_PREFIX,
    BACKUP_REGISTRY_KEY,
    BARE_ENTRIES_FORMAT_VERSION,
    CHANGE_KEY_SEPARATOR,
    CRITICAL_PREFIXES,
    EMERGENCY_BACKUP_KEY,
    FULL_PREFIX,
    INCREMENTAL_PREFIX,
    PRE_RESTORE_PREFIX,
    SECTION_CACHE_ENTRIES,
    SECTION_CACHE_STATS,
    SECTION_CALCULATIONS,
    SECTION_LOCAL_STORAGE,
    SECTION_SESSION_STORAGE,
    SECTION_SETTINGS,
    TAG_BACKUP,
    TAG_CALCULATIONS,
    TAG_REGISTRY,
    USER_SETTING_KEYS,
)
from crm_cache.core.clock import Clock, epoch_ms, iso_from_ms
from crm_cache.core.compression import ALGORITHM, compress_text, compression_ratio, decompress_text
from crm_cache.core.logging import get_logger, log_backup_operation
from crm_cache.core.storage import KeyValueStore
from .integrity import seal, serialize, validate_integrity
from .models import BackupIntegrityError, BackupNotFoundError, BackupRecord, BackupType
from .scheduler import BackupScheduler

if TYPE_CHECKING:
    from crm_cache.core.config import Settings
    from crm_cache.core.encryption import EncryptionService
    from crm_cache.services.cache import CacheManager

logger = get_logger(__name__)

ConfirmCallback = Callable[[str], Union[bool, Awaitable[bool]]]


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class BackupRecoveryService:
    """Full, incremental, automatic and emergency backups plus checked restores."""

    def __init__(
        self,
        cache: "CacheManager",
        encryption: "EncryptionService",
        local_store: KeyValueStore,
        session_store: KeyValueStore,
        settings: "Settings",
        clock: Clock = epoch_ms,
        confirm: Optional[ConfirmCallback] = None,
    ):
        self.cache = cache
        self.encryption = encryption
        self.local_store = local_store
        self.session_store = session_store
        self.clock = clock
        self.confirm = confirm

        self.max_backups = settings.backup_max_backups
        self.compression_threshold = settings.backup_compression_threshold
        self.encryption_enabled = settings.backup_encryption_enabled
        self.backup_ttl = settings.backup_ttl_ms
        self.restore_ttl = settings.backup_restore_ttl_ms

        self.scheduler = BackupScheduler(self, settings)
        self._stores: Dict[str, KeyValueStore] = {
            local_store.name: local_store,
            session_store.name: session_store,
        }
        self._catalog_lock = asyncio.Lock()
        self._last_id_ms = 0
        self._unsubscribers: List[Callable[[], None]] = []

    # ============================================================================
    # Backup creation
    # ============================================================================

    async def create_full_backup(self, name: Optional[str] = None) -> Dict[str, Any]:
        """Snapshot every observable storage surface."""
        start = time.perf_counter()
        try:
            created_ms = self._next_ms()
            backup_id = name or f"{FULL_PREFIX}{created_ms}"
            if self._backup_key(backup_id) == BACKUP_REGISTRY_KEY:
                raise ValueError(f'"{backup_id}" is a reserved backup name')
            logger.info("Starting full backup", backup_id=backup_id)

            local, session, cache_entries, cache_stats, settings, calculations = await asyncio.gather(
                self._capture_store(self.local_store),
                self._capture_store(self.session_store),
                self._capture_cache_entries(),
                self._capture_cache_stats(),
                self._capture_user_settings(),
                self._capture_calculations(),
            )

            payload = {
                "metadata": self._metadata(backup_id, created_ms, BackupType.FULL),
                SECTION_LOCAL_STORAGE: local,
                SECTION_SESSION_STORAGE: session,
                SECTION_CACHE_ENTRIES: cache_entries,
                SECTION_CACHE_STATS: cache_stats,
                SECTION_SETTINGS: settings,
                SECTION_CALCULATIONS: calculations,
            }

            record = await self._store_payload(payload, created_ms)
            duration = _elapsed_ms(start)
            log_backup_operation(logger, "Full backup completed", backup_id, duration,
                                 size=record.size, compressed=record.compressed)
            return {"success": True, "backup_id": backup_id, "size": record.size, "duration": duration}

        except Exception as e:
            duration = _elapsed_ms(start)
            logger.error("Full backup failed", error=str(e), duration_ms=round(duration))
            return {"success": False, "error": str(e), "duration": duration}

    async def create_incremental_backup(self, changed_keys: Sequence[str]) -> Dict[str, Any]:
        """Snapshot only the raw values behind store-prefixed keys like "local_storage:leads_1"."""
        start = time.perf_counter()
        try:
            created_ms = self._next_ms()
            backup_id = f"{INCREMENTAL_PREFIX}{created_ms}"
            changed_keys = list(dict.fromkeys(changed_keys))
            logger.info("Starting incremental backup", backup_id=backup_id, changed_keys=changed_keys)

            changes: Dict[str, Optional[str]] = {}
            for changed_key in changed_keys:
                store, actual_key = self._resolve_changed_key(changed_key)
                if store is not None:
                    changes[changed_key] = store.get_item(actual_key)

            metadata = self._metadata(backup_id, created_ms, BackupType.INCREMENTAL)
            metadata["changed_keys"] = changed_keys
            payload = {"metadata": metadata, "changes": changes}

            record = await self._store_payload(payload, created_ms, changed_keys=changed_keys)
            duration = _elapsed_ms(start)
            log_backup_operation(logger, "Incremental backup completed", backup_id, duration,
                                 size=record.size)
            return {"success": True, "backup_id": backup_id, "size": record.size, "duration": duration}

        except Exception as e:
            duration = _elapsed_ms(start)
            logger.error("Incremental backup failed", error=str(e), duration_ms=round(duration))
            return {"success": False, "error": str(e), "duration": duration}

    async def create_auto_backup(self) -> Dict[str, Any]:
        self.scheduler.mark_auto_backup(self.clock())
        return await self.create_full_backup(f"{AUTO_PREFIX}{self._next_ms()}")

    def create_emergency_backup(self) -> bool:
        """Synchronous raw snapshot of both stores into the local store. Best-effort."""
        try:
            local = self.local_store.to_dict()
            local.pop(EMERGENCY_BACKUP_KEY, None)
            snapshot = {
                "timestamp": self.clock(),
                SECTION_LOCAL_STORAGE: local,
                SECTION_SESSION_STORAGE: self.session_store.to_dict(),
            }
            self.local_store.set_item(EMERGENCY_BACKUP_KEY, json.dumps(snapshot))
            logger.info("Emergency backup created", keys=len(local) + len(self.session_store))
            return True
        except Exception as e:
            logger.error("Emergency backup failed", error=str(e))
            return False

    def schedule_incremental_backup(self, changed_key: str) -> None:
        self.scheduler.schedule_incremental(changed_key)

    def on_storage_change(self, store_name: str, key: str) -> None:
        """Change-notification listener for the raw stores."""
        if self.is_critical_data(key):
            self.schedule_incremental_backup(f"{store_name}{CHANGE_KEY_SEPARATOR}{key}")

    @staticmethod
    def is_critical_data(key: Optional[str]) -> bool:
        return bool(key) and key.startswith(CRITICAL_PREFIXES)

    # ============================================================================
    # Restore
    # ============================================================================

    async def restore_from_backup(
        self,
        backup_id: str,
        *,
        dry_run: bool = False,
        skip_confirmation: bool = False,
        selective_restore: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            logger.info("Starting restore operation", backup_id=backup_id, dry_run=dry_run)

            stored = await self.cache.get(self._backup_key(backup_id))
            if stored is None:
                raise BackupNotFoundError(f'Backup "{backup_id}" not found')

            payload = self._unwrap(stored)
            if not validate_integrity(payload):
                raise BackupIntegrityError("Backup integrity validation failed")

            if dry_run:
                return {
                    "success": True,
                    "dry_run": True,
                    "metadata": payload["metadata"],
                    "data_keys": [key for key in payload if key != "metadata"],
                }

            if not skip_confirmation and not await self._confirm(backup_id):
                logger.info("Restore cancelled by user", backup_id=backup_id)
                return {"success": False, "cancelled": True}

            pre_restore = await self.create_full_backup(f"{PRE_RESTORE_PREFIX}{self._next_ms()}")
            if not pre_restore["success"]:
                raise RuntimeError(f"Pre-restore backup failed: {pre_restore.get('error')}")

            restored_sections = await self._apply_restore(payload, selective_restore)

            duration = _elapsed_ms(start)
            log_backup_operation(logger, "Restore completed successfully", backup_id, duration,
                                 restored_sections=restored_sections)
            return {
                "success": True,
                "backup_id": backup_id,
                "restored_at": iso_from_ms(self.clock()),
                "duration": duration,
                "pre_restore_backup_id": pre_restore["backup_id"],
                "restored_sections": restored_sections,
            }

        except Exception as e:
            duration = _elapsed_ms(start)
            logger.error("Restore operation failed", backup_id=backup_id, error=str(e),
                         duration_ms=round(duration))
            return {"success": False, "error": str(e), "duration": duration}

    def _unwrap(self, stored: Any) -> Any:
        """Decrypt a token and open a compression envelope, in that order."""
        data = stored
        if isinstance(data, str):
            data = self.encryption.decrypt_payload(data)
        if isinstance(data, dict) and data.get("compressed") is True and "data" in data:
            data = json.loads(decompress_text(data["data"]))
        return data

    async def _restore_cache_entry(self, key: str, item: Any, with_meta: bool) -> bool:
        if not with_meta:
            return await self.cache.set(key, item, ttl=self.restore_ttl)
        if not isinstance(item, dict):
            return False
        return await self.cache.set(
            key,
            item.get("value"),
            ttl=self.restore_ttl,
            tags=item.get("tags"),
            priority=item.get("priority", 1),
            compress=bool(item.get("compressed")),
        )

    async def _confirm(self, backup_id: str) -> bool:
        if self.confirm is None:
            logger.warning("Restore needs confirmation but no confirmation handler is set",
                           backup_id=backup_id)
            return False
        answer = self.confirm(
            f'Are you sure you want to restore from backup "{backup_id}"? '
            "This will overwrite current data."
        )
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    async def _apply_restore(self, payload: Dict[str, Any],
                             selective_restore: Optional[Sequence[str]]) -> List[str]:
        def wanted(section: str) -> bool:
            return selective_restore is None or section in selective_restore

        restored: List[str] = []

        for section in (SECTION_LOCAL_STORAGE, SECTION_SESSION_STORAGE):
            data = payload.get(section)
            if wanted(section) and isinstance(data, dict):
                store = self._stores[section]
                for key, value in data.items():
                    if value is not None:
                        store.set_item(key, value if isinstance(value, str) else json.dumps(value))
                restored.append(section)

        entries = payload.get(SECTION_CACHE_ENTRIES)
        if wanted(SECTION_CACHE_ENTRIES) and isinstance(entries, dict):
            with_meta = payload["metadata"].get("version") != BARE_ENTRIES_FORMAT_VERSION
            failed = [key for key, item in entries.items()
                      if not await self._restore_cache_entry(key, item, with_meta)]
            if failed:
                logger.warning("Some cache entries were not restored", failed=failed)
            restored.append(SECTION_CACHE_ENTRIES)

        stats = payload.get(SECTION_CACHE_STATS)
        if wanted(SECTION_CACHE_STATS) and isinstance(stats, dict):
            # Informational only; live counters are not overwritten
            logger.info("Cache stats from backup", **{f"backup_{k}": v for k, v in stats.items()})
            restored.append(SECTION_CACHE_STATS)

        changes = payload.get("changes")
        if isinstance(changes, dict):
            applied = False
            for changed_key, value in changes.items():
                store, actual_key = self._resolve_changed_key(changed_key)
                if store is None or not wanted(store.name):
                    continue
                if value is None:
                    store.remove_item(actual_key)
                else:
                    store.set_item(actual_key, value)
                applied = True
            if applied:
                restored.append("changes")

        logger.info("Data restoration completed", restored_sections=restored)
        return restored

    # ============================================================================
    # Catalog
    # ============================================================================

    async def get_backup_list(self) -> List[Dict[str, Any]]:
        """Catalog entries, newest first."""
        try:
            records = self._records(await self._load_catalog())
            return [record.to_dict() for record in records]
        except Exception as e:
            logger.error("Failed to get backup list", error=str(e))
            return []

    async def delete_backup(self, backup_id: str) -> Dict[str, Any]:
        try:
            await self.cache.delete(self._backup_key(backup_id))
            async with self._catalog_lock:
                catalog = await self._load_catalog()
                catalog.pop(backup_id, None)
                await self._save_catalog(catalog)

            logger.info("Backup deleted", backup_id=backup_id)
            return {"success": True}

        except Exception as e:
            logger.error("Failed to delete backup", backup_id=backup_id, error=str(e))
            return {"success": False, "error": str(e)}

    async def cleanup_old_backups(self) -> int:
        """Keep the max_backups newest catalog entries; delete the rest. Returns count deleted."""
        try:
            backups = await self.get_backup_list()
            to_delete = backups[self.max_backups:]
            deleted = 0
            for backup in to_delete:
                result = await self.delete_backup(backup["id"])
                if result["success"]:
                    deleted += 1

            logger.info("Backup cleanup completed",
                        total_backups=len(backups),
                        deleted_backups=deleted,
                        remaining_backups=len(backups) - deleted)
            return deleted

        except Exception as e:
            logger.error("Backup cleanup failed", error=str(e))
            return 0

    async def get_system_health(self) -> Dict[str, Any]:
        try:
            backups = await self.get_backup_list()
            last = backups[0] if backups else None
            return {
                "total_backups": len(backups),
                "last_backup": {
                    "id": last["id"],
                    "timestamp": last["timestamp"],
                    "type": last["type"],
                    "size": last["size"],
                } if last else None,
                "auto_backup_enabled": self.scheduler.auto_backup_enabled,
                "next_auto_backup": self.scheduler.next_auto_backup_time(self.clock()),
                "storage_health": await self.cache.get_stats(),
                "encryption_enabled": self.encryption_enabled,
            }
        except Exception as e:
            logger.error("Failed to get system health", error=str(e))
            return {"error": str(e)}

    async def _load_catalog(self) -> Dict[str, Dict[str, Any]]:
        """Read the catalog. Anything malformed reads as an empty (or pruned) catalog."""
        raw = await self.cache.get(BACKUP_REGISTRY_KEY)
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            logger.warning("Backup registry is malformed, treating as empty",
                           found=type(raw).__name__)
            return {}

        catalog = {}
        for backup_id, data in raw.items():
            try:
                BackupRecord.from_catalog(backup_id, data)
            except (KeyError, TypeError, ValueError, AttributeError):
                logger.warning("Dropping malformed backup registry entry", backup_id=backup_id)
                continue
            catalog[backup_id] = data
        return catalog

    async def _save_catalog(self, catalog: Dict[str, Dict[str, Any]]) -> None:
        stored = await self.cache.set(BACKUP_REGISTRY_KEY, catalog,
                                      ttl=self.backup_ttl, tags=[TAG_BACKUP, TAG_REGISTRY])
        if not stored:
            raise RuntimeError("Failed to write backup registry")

    @staticmethod
    def _records(catalog: Dict[str, Dict[str, Any]]) -> List[BackupRecord]:
        records = [BackupRecord.from_catalog(backup_id, data) for backup_id, data in catalog.items()]
        records.sort(key=lambda r: (r.created_ms, r.timestamp), reverse=True)
        return records

    # ============================================================================
    # Pipeline helpers
    # ============================================================================

    async def _store_payload(self, payload: Dict[str, Any], created_ms: int,
                             changed_keys: Optional[List[str]] = None) -> BackupRecord:
        metadata = payload["metadata"]
        backup_id = metadata["backup_id"]
        serialized, size, checksum = seal(payload)

        stored: Any = payload
        compressed = size > self.compression_threshold
        if compressed:
            data = compress_text(serialize(payload))
            stored = {"compressed": True, "algorithm": ALGORITHM, "data": data}
            logger.debug("Backup payload compressed", backup_id=backup_id,
                         ratio=round(compression_ratio(serialized, data), 2))

        if self.encryption_enabled:
            stored = self.encryption.encrypt_payload(stored)

        if not await self.cache.set(self._backup_key(backup_id), stored,
                                    ttl=self.backup_ttl, tags=[TAG_BACKUP]):
            raise RuntimeError(f'Failed to store backup "{backup_id}"')

        record = BackupRecord(
            id=backup_id,
            timestamp=metadata["timestamp"],
            type=BackupType(metadata["type"]),
            size=size,
            created_ms=created_ms,
            checksum=checksum,
            compressed=compressed,
            encrypted=self.encryption_enabled,
            changed_keys=changed_keys,
        )
        async with self._catalog_lock:
            catalog = await self._load_catalog()
            catalog[backup_id] = record.catalog_value()
            await self._save_catalog(catalog)
        return record

    def _metadata(self, backup_id: str, created_ms: int, backup_type: BackupType) -> Dict[str, Any]:
        return {
            "backup_id": backup_id,
            "timestamp": iso_from_ms(created_ms),
            "type": backup_type.value,
            "version": BACKUP_FORMAT_VERSION,
        }

    def _next_ms(self) -> int:
        """Clock reading, bumped so every backup id in this process is unique."""
        now = max(self.clock(), self._last_id_ms + 1)
        self._last_id_ms = now
        return now

    @staticmethod
    def _backup_key(backup_id: str) -> str:
        return f"{BACKUP_KEY_PREFIX}{backup_id}"

    def _resolve_changed_key(self, changed_key: str):
        store_name, separator, actual_key = changed_key.partition(CHANGE_KEY_SEPARATOR)
        if not separator:
            return None, changed_key
        return self._stores.get(store_name), actual_key

    async def _capture_store(self, store: KeyValueStore) -> Dict[str, str]:
        return store.to_dict()

    async def _capture_cache_entries(self) -> Dict[str, Any]:
        return await self.cache.entries(exclude_prefixes=(BACKUP_KEY_PREFIX,), with_meta=True)

    async def _capture_cache_stats(self) -> Dict[str, Any]:
        return await self.cache.get_stats()

    async def _capture_user_settings(self) -> Dict[str, Optional[str]]:
        return {field: self.local_store.get_item(key) for field, key in USER_SETTING_KEYS.items()}

    async def _capture_calculations(self) -> Dict[str, Any]:
        return await self.cache.entries(tag=TAG_CALCULATIONS)

    # ============================================================================
    # Lifecycle
    # ============================================================================

    def before_unload(self) -> bool:
        """Page-lifecycle hook: emergency snapshot plus a best-effort metrics flush."""
        created = self.create_emergency_backup()
        try:
            asyncio.get_running_loop().create_task(self.cache.flush())
        except RuntimeError:
            logger.debug("No running loop, skipping flush on unload")
        return created

    async def startup(self) -> None:
        for store in self._stores.values():
            self._unsubscribers.append(store.subscribe(self.on_storage_change))
        await self.scheduler.start()
        logger.info("Backup and recovery system initialized",
                    max_backups=self.max_backups,
                    encryption_enabled=self.encryption_enabled)

    async def shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.scheduler.stop()
        logger.info("Backup and recovery system stopped")
