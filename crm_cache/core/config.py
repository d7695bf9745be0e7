"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Cache and backup settings driven by CRM_CACHE_* environment variables."""

    # Durable tier
    database_url: str = Field(default="sqlite+aiosqlite:///./data/crm_cache.db")
    database_echo: bool = Field(default=False)

    # Raw key-value stores (None keeps the origin store in memory)
    local_storage_path: Optional[str] = Field(default="./data/local_storage.json")

    # Cache engine
    cache_default_ttl_ms: int = Field(default=3_600_000, ge=1)
    cache_max_memory_entries: int = Field(default=1000, ge=1)
    cache_cleanup_interval: float = Field(default=300, gt=0)  # seconds

    # Metrics recorder
    metrics_ttl_ms: int = Field(default=86_400_000, ge=1)
    metrics_flush_size: int = Field(default=50, ge=1)
    metrics_flush_interval: float = Field(default=30, gt=0)  # seconds

    # Backup / recovery
    backup_max_backups: int = Field(default=10, ge=1)
    backup_auto_interval: float = Field(default=6 * 60 * 60, gt=0)  # seconds
    backup_initial_delay: float = Field(default=30, ge=0)
    backup_incremental_delay: float = Field(default=30, ge=0)
    backup_cleanup_interval: float = Field(default=24 * 60 * 60, gt=0)
    backup_compression_threshold: int = Field(default=10_000, ge=0)  # bytes
    backup_ttl_ms: int = Field(default=30 * 24 * 60 * 60 * 1000, ge=1)
    backup_restore_ttl_ms: int = Field(default=24 * 60 * 60 * 1000, ge=1)
    backup_encryption_enabled: bool = Field(default=True)
    backup_encryption_key: Optional[str] = Field(default=None, min_length=32)
    encryption_kdf_iterations: int = Field(default=600_000, ge=1)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="CRM_CACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="none",
    )

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///")[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode="after")
    def require_key_when_encrypting(self):
        if self.backup_encryption_enabled and not self.backup_encryption_key:
            raise ValueError(
                "backup_encryption_key is required when backup encryption is enabled"
            )
        return self

    @property
    def uses_memory_database(self) -> bool:
        return ":memory:" in self.database_url
