"""Epoch-millisecond clock shared by the cache and backup services."""

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], int]


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def iso_from_ms(ms: int) -> str:
    """Render an epoch-millisecond timestamp as ISO-8601 (UTC)."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()
