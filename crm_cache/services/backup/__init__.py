"""Backup and recovery package.

Full and incremental snapshots of the raw stores and the durable cache tier,
checksummed, optionally compressed and encrypted, tracked in a catalog with
retention, and restored only after integrity validation.
"""

from .models import (
    BackupType,
    BackupRecord,
    BackupError,
    BackupNotFoundError,
    BackupIntegrityError,
)
from .integrity import calculate_checksum, seal, serialize, validate_integrity
from .scheduler import BackupScheduler
from .service import BackupRecoveryService

__all__ = [
    "BackupType",
    "BackupRecord",
    "BackupError",
    "BackupNotFoundError",
    "BackupIntegrityError",
    "calculate_checksum",
    "seal",
    "serialize",
    "validate_integrity",
    "BackupScheduler",
    "BackupRecoveryService",
]
