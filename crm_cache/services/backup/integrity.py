"""Backup serialization and integrity checks.

The checksum is a rolling 32-bit hash (hash * 31 + code point) rendered as
signed hexadecimal. It detects accidental corruption or truncation only; it
offers no protection against deliberate tampering.

The checksum and size cover the canonical serialization of the payload with
``metadata.checksum`` and ``metadata.size`` left out, so a sealed payload can
be re-verified from its own contents.
"""

import json
from typing import Any, Dict, Tuple

from crm_cache.core.logging import get_logger

logger = get_logger(__name__)

_SEALED_FIELDS = ("checksum", "size")


def serialize(payload: Any) -> str:
    """Canonical JSON: sorted keys, compact separators."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def calculate_checksum(data: str) -> str:
    h = 0
    for char in data:
        h = ((h << 5) - h + ord(char)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return format(h, "x")


def _checksum_basis(payload: Dict[str, Any]) -> Dict[str, Any]:
    metadata = {k: v for k, v in payload.get("metadata", {}).items() if k not in _SEALED_FIELDS}
    return {**payload, "metadata": metadata}


def seal(payload: Dict[str, Any]) -> Tuple[str, int, str]:
    """Stamp metadata.size and metadata.checksum onto payload.

    Returns (serialized basis, size in bytes, checksum).
    """
    serialized = serialize(_checksum_basis(payload))
    size = len(serialized.encode("utf-8"))
    checksum = calculate_checksum(serialized)
    payload["metadata"]["size"] = size
    payload["metadata"]["checksum"] = checksum
    return serialized, size, checksum


def validate_integrity(payload: Any) -> bool:
    """Recompute the checksum. Size drift is only a warning; checksum drift fails."""
    try:
        if not isinstance(payload, dict) or not isinstance(payload.get("metadata"), dict):
            logger.warning("Backup missing metadata")
            return False

        metadata = payload["metadata"]
        checksum = metadata.get("checksum")
        if not checksum:
            logger.warning("Backup missing checksum", backup_id=metadata.get("backup_id"))
            return False

        serialized = serialize(_checksum_basis(payload))
        size = metadata.get("size")
        actual_size = len(serialized.encode("utf-8"))
        if size is not None and size != actual_size:
            logger.warning("Backup size mismatch", expected=size, actual=actual_size)

        actual = calculate_checksum(serialized)
        if actual != checksum:
            logger.error("Backup checksum validation failed", expected=checksum, actual=actual)
            return False

        return True

    except Exception as e:
        logger.error("Backup validation failed", error=str(e))
        return False
