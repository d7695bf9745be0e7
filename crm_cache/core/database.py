"""Async durable tier built on SQLModel and SQLAlchemy 2.0.

Methods here raise on failure. The cache engine is the boundary that turns
storage errors into safe defaults.
"""

from typing import Any, Dict, Iterable, List, Optional
from contextlib import asynccontextmanager

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, select

from crm_cache.core.config import Settings
from crm_cache.core.logging import get_logger
from crm_cache.models.cache import CacheRecord, MetricRecord, CalculationRecord, CacheMetadata

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
            if self.settings.uses_memory_database:
                # One shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)
            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Cache Entries
    # ============================================================================

    async def get_cache_entry(self, key: str) -> Optional[CacheRecord]:
        """Get a cache record by key, expired or not."""
        async with self.get_session() as session:
            result = await session.execute(select(CacheRecord).where(CacheRecord.key == key))
            return result.scalar_one_or_none()

    async def put_cache_entry(self, record: CacheRecord) -> None:
        """Insert or replace a cache record."""
        async with self.get_session() as session:
            result = await session.execute(select(CacheRecord).where(CacheRecord.key == record.key))
            existing = result.scalar_one_or_none()

            if existing:
                existing.value = record.value
                existing.created_at = record.created_at
                existing.last_accessed = record.last_accessed
                existing.expires_at = record.expires_at
                existing.access_count = record.access_count
                existing.tags = list(record.tags)
                existing.priority = record.priority
                existing.compressed = record.compressed
            else:
                session.add(record)

            await session.commit()

    async def delete_cache_entry(self, key: str) -> int:
        """Delete a cache record. Returns rows removed."""
        async with self.get_session() as session:
            result = await session.execute(delete(CacheRecord).where(CacheRecord.key == key))
            await session.commit()
            return result.rowcount or 0

    async def delete_cache_entries(self, keys: Iterable[str]) -> int:
        """Bulk delete by key set."""
        keys = list(keys)
        if not keys:
            return 0
        async with self.get_session() as session:
            result = await session.execute(delete(CacheRecord).where(CacheRecord.key.in_(keys)))
            await session.commit()
            return result.rowcount or 0

    async def get_all_cache_entries(self) -> List[CacheRecord]:
        async with self.get_session() as session:
            result = await session.execute(select(CacheRecord).order_by(CacheRecord.key))
            return list(result.scalars().all())

    async def get_cache_keys(self) -> List[str]:
        async with self.get_session() as session:
            result = await session.execute(select(CacheRecord.key).order_by(CacheRecord.key))
            return list(result.scalars().all())

    async def count_cache_entries(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(select(func.count()).select_from(CacheRecord))
            return result.scalar_one()

    async def clear_cache_entries(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(delete(CacheRecord))
            await session.commit()
            return result.rowcount or 0

    async def delete_expired_cache_entries(self, now: int) -> List[str]:
        """Remove records whose expires_at is at or before now. Returns the deleted keys."""
        async with self.get_session() as session:
            result = await session.execute(
                select(CacheRecord.key).where(CacheRecord.expires_at <= now)
            )
            keys = list(result.scalars().all())
            if not keys:
                return []

            await session.execute(
                delete(CacheRecord).where(
                    CacheRecord.key.in_(keys),
                    CacheRecord.expires_at <= now
                )
            )
            await session.commit()
            logger.info("Cleaned up expired cache entries", count=len(keys))
            return keys

    # ============================================================================
    # Metrics
    # ============================================================================

    async def add_metrics(self, records: List[MetricRecord]) -> None:
        if not records:
            return
        async with self.get_session() as session:
            session.add_all(records)
            await session.commit()

    async def get_metrics_since(self, since: int) -> List[MetricRecord]:
        async with self.get_session() as session:
            result = await session.execute(
                select(MetricRecord).where(MetricRecord.timestamp > since)
            )
            return list(result.scalars().all())

    async def delete_expired_metrics(self, now: int) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                delete(MetricRecord).where(MetricRecord.expires_at <= now)
            )
            await session.commit()
            return result.rowcount or 0

    # ============================================================================
    # Calculations
    # ============================================================================

    async def add_calculation(self, sqft: float, result: Dict[str, Any], timestamp: int) -> None:
        async with self.get_session() as session:
            session.add(CalculationRecord(sqft=sqft, result=result, timestamp=timestamp))
            await session.commit()

    async def get_calculations(self, sqft: Optional[float] = None) -> List[CalculationRecord]:
        async with self.get_session() as session:
            stmt = select(CalculationRecord).order_by(CalculationRecord.timestamp.desc())
            if sqft is not None:
                stmt = stmt.where(CalculationRecord.sqft == sqft)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Metadata
    # ============================================================================

    async def get_metadata(self, key: str) -> Optional[str]:
        async with self.get_session() as session:
            result = await session.execute(select(CacheMetadata).where(CacheMetadata.key == key))
            row = result.scalar_one_or_none()
            return row.value if row else None

    async def set_metadata(self, key: str, value: str) -> None:
        async with self.get_session() as session:
            result = await session.execute(select(CacheMetadata).where(CacheMetadata.key == key))
            row = result.scalar_one_or_none()
            if row:
                row.value = value
            else:
                session.add(CacheMetadata(key=key, value=value))
            await session.commit()

    async def get_or_create_salt(self, generate) -> bytes:
        """Return the stored encryption salt, creating it with generate() on first run."""
        salt_hex = await self.get_metadata("encryption_salt")
        if salt_hex:
            logger.debug("Loaded existing encryption salt")
            return bytes.fromhex(salt_hex)

        salt = generate()
        await self.set_metadata("encryption_salt", salt.hex())
        logger.info("Generated new encryption salt for backup payloads")
        return salt
