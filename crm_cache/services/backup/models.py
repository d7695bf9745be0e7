"""Backup catalog models.

A backup is two things: the payload stored under ``backup_<id>`` in the
durable cache tier, and a BackupRecord in the catalog stored under
``backup_registry``. Both are JSON-serializable.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class BackupError(Exception):
    """Base class for restore pipeline failures."""


class BackupNotFoundError(BackupError):
    pass


class BackupIntegrityError(BackupError):
    pass


@dataclass
class BackupRecord:
    """Catalog entry describing one stored backup payload."""
    id: str
    timestamp: str          # ISO-8601
    type: BackupType
    size: int               # bytes of the serialized payload, before compression/encryption
    created_ms: int         # epoch ms, unique per backup; catalog sort key
    checksum: str = ""
    compressed: bool = False
    encrypted: bool = False
    changed_keys: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        if self.changed_keys is None:
            data.pop("changed_keys")
        return data

    def catalog_value(self) -> Dict[str, Any]:
        """Catalog stores records keyed by id, so the id itself is omitted."""
        data = self.to_dict()
        data.pop("id")
        return data

    @classmethod
    def from_catalog(cls, backup_id: str, data: Dict[str, Any]) -> "BackupRecord":
        return cls(
            id=backup_id,
            timestamp=data["timestamp"],
            type=BackupType(data["type"]),
            size=int(data.get("size", 0)),
            created_ms=int(data.get("created_ms", 0)),
            checksum=data.get("checksum", ""),
            compressed=bool(data.get("compressed", False)),
            encrypted=bool(data.get("encrypted", False)),
            changed_keys=data.get("changed_keys"),
        )
