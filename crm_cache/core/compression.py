"""
Payload compression.

LZ4 frame compression of UTF-8 JSON text, base64-encoded so the result stays
a plain string that can be stored in a JSON column or inside another JSON
document.
"""

import base64
import json
from typing import Any

import lz4.frame

ALGORITHM = "lz4"


def compress_text(text: str) -> str:
    """Compress a string and return it as base64 text."""
    compressed = lz4.frame.compress(text.encode("utf-8"))
    return base64.b64encode(compressed).decode("ascii")


def decompress_text(data: str) -> str:
    """Inverse of compress_text()."""
    return lz4.frame.decompress(base64.b64decode(data)).decode("utf-8")


def compress_value(value: Any) -> str:
    """Serialize a JSON-compatible value and compress it."""
    return compress_text(json.dumps(value, separators=(",", ":")))


def decompress_value(data: str) -> Any:
    """Inverse of compress_value()."""
    return json.loads(decompress_text(data))


def compression_ratio(original: str, compressed: str) -> float:
    """Original size over stored size (base64 overhead included)."""
    if not compressed:
        return 0.0
    return len(original.encode("utf-8")) / len(compressed)
