"""SQLModel tables backing the durable cache tier.

The durable tier is the source of truth for key enumeration and TTL-driven
cleanup. Timestamps are epoch milliseconds so they compare directly against
the cache clock.
"""

from typing import Any, Dict, List, Optional
from sqlmodel import SQLModel, Field, Column, JSON


class CacheRecord(SQLModel, table=True):
    """Persisted copy of a cache entry."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: Any = Field(default=None, sa_column=Column(JSON))
    created_at: int = Field(default=0)
    last_accessed: int = Field(default=0)
    expires_at: int = Field(default=0, index=True)
    access_count: int = Field(default=0)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    priority: int = Field(default=1)
    compressed: bool = Field(default=False)


class MetricRecord(SQLModel, table=True):
    """One timed operation recorded by the metrics recorder."""

    __tablename__ = "cache_metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    operation: str = Field(index=True, max_length=100)
    duration: float = Field(default=0.0)  # milliseconds
    success: bool = Field(default=True)
    timestamp: int = Field(index=True)
    expires_at: int = Field(index=True)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))


class CalculationRecord(SQLModel, table=True):
    """History of memoized vent calculations."""

    __tablename__ = "calculations"

    id: Optional[int] = Field(default=None, primary_key=True)
    sqft: float = Field(index=True)
    result: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    timestamp: int = Field(default=0)


class CacheMetadata(SQLModel, table=True):
    """Small string settings owned by the cache (encryption salt)."""

    __tablename__ = "cache_metadata"

    key: str = Field(primary_key=True, max_length=50)
    value: str = Field(max_length=500)
