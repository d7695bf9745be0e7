"""
Pytest Configuration and Shared Fixtures

Every test gets its own SQLite file under tmp_path and a controllable clock.
"""

import pytest

from crm_cache.core.config import Settings
from crm_cache.core.database import Database
from crm_cache.core.encryption import EncryptionService
from crm_cache.core.storage import FileKeyValueStore, MemoryKeyValueStore
from crm_cache.services.backup import BackupRecoveryService
from crm_cache.services.cache import CacheManager
from crm_cache.services.metrics import MetricsRecorder

TEST_PASSPHRASE = "test-passphrase-that-is-long-enough-123"
START_MS = 1_700_000_000_000


# ============================================================================
# Helpers
# ============================================================================

class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FailingDatabase:
    """Durable tier stub whose every coroutine raises."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise RuntimeError(f"durable tier unavailable ({name})")
        return fail


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}",
        local_storage_path=str(tmp_path / "local_storage.json"),
        cache_max_memory_entries=100,
        cache_cleanup_interval=3600,
        metrics_flush_size=1000,
        metrics_flush_interval=3600,
        backup_max_backups=10,
        backup_auto_interval=3600,
        backup_initial_delay=3600,
        backup_incremental_delay=0.05,
        backup_cleanup_interval=3600,
        backup_encryption_enabled=True,
        backup_encryption_key=TEST_PASSPHRASE,
        encryption_kdf_iterations=1_000,
        log_format="console",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
async def metrics(database, settings, clock):
    recorder = MetricsRecorder(database, settings, clock=clock)
    yield recorder
    await recorder.flush()


@pytest.fixture
async def cache(database, settings, metrics, clock):
    manager = CacheManager(database, settings, metrics=metrics, clock=clock)
    await manager.startup()
    yield manager
    await manager.shutdown()


@pytest.fixture
def encryption() -> EncryptionService:
    service = EncryptionService(iterations=1_000)
    service.initialize(TEST_PASSPHRASE, EncryptionService.generate_salt())
    return service


@pytest.fixture
def local_store(settings) -> FileKeyValueStore:
    return FileKeyValueStore(settings.local_storage_path)


@pytest.fixture
def session_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
async def backup(cache, encryption, local_store, session_store, settings, clock):
    service = BackupRecoveryService(
        cache, encryption, local_store, session_store, settings, clock=clock
    )
    yield service
    await service.shutdown()
