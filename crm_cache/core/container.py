"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from crm_cache.core.config import Settings
from crm_cache.core.database import Database
from crm_cache.core.encryption import EncryptionService
from crm_cache.core.storage import FileKeyValueStore, MemoryKeyValueStore
from crm_cache.core.cleanup import CleanupService
from crm_cache.core.logging import get_logger
from crm_cache.constants import LOCAL_STORAGE, SESSION_STORAGE
from crm_cache.services.metrics import MetricsRecorder
from crm_cache.services.cache import CacheManager
from crm_cache.services.backup import BackupRecoveryService

logger = get_logger(__name__)


def _local_store(settings: Settings):
    if settings.local_storage_path:
        return FileKeyValueStore(settings.local_storage_path, name=LOCAL_STORAGE)
    return MemoryKeyValueStore(name=LOCAL_STORAGE)


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Durable tier
    database = providers.Singleton(
        Database,
        settings=settings
    )

    encryption = providers.Singleton(
        EncryptionService,
        iterations=settings.provided.encryption_kdf_iterations
    )

    # Raw key-value stores
    local_store = providers.Singleton(
        _local_store,
        settings=settings
    )

    session_store = providers.Singleton(
        MemoryKeyValueStore,
        name=SESSION_STORAGE
    )

    # Services
    metrics = providers.Singleton(
        MetricsRecorder,
        database=database,
        settings=settings
    )

    cache = providers.Singleton(
        CacheManager,
        database=database,
        settings=settings,
        metrics=metrics
    )

    cleanup = providers.Singleton(
        CleanupService,
        cache=cache,
        metrics=metrics,
        settings=settings
    )

    backup = providers.Singleton(
        BackupRecoveryService,
        cache=cache,
        encryption=encryption,
        local_store=local_store,
        session_store=session_store,
        settings=settings
    )


async def startup_services(container: "Container") -> None:
    """Bring services up in dependency order."""
    settings = container.settings()
    database = container.database()
    await database.startup()

    if settings.backup_encryption_enabled:
        salt = await database.get_or_create_salt(EncryptionService.generate_salt)
        container.encryption().initialize(settings.backup_encryption_key, salt)

    await container.metrics().startup()
    await container.cache().startup()
    await container.cleanup().start()
    await container.backup().startup()
    logger.info("Services started successfully")


async def shutdown_services(container: "Container") -> None:
    """Stop services in reverse order, flushing what is still buffered."""
    backup = container.backup()
    await backup.shutdown()
    backup.create_emergency_backup()

    await container.cleanup().stop()
    await container.cache().shutdown()
    await container.metrics().shutdown()
    await container.database().shutdown()
    container.encryption().clear()
    logger.info("Services shutdown complete")


# Global container instance
container = Container()
