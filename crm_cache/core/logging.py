"""structlog setup for the cache and backup services.

Events are short strings with keyword context, rendered as JSON lines in
production and as aligned console lines during development.
"""

import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import structlog

from crm_cache.core.config import Settings

# Libraries whose INFO output drowns the cache trace
_QUIET_LOGGERS = ("aiosqlite", "uvicorn.access")


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        path = Path(settings.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def _renderer(log_format: str):
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=False,
        pad_event=40,
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging at the configured level."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, handlers=_handlers(settings, level),
                        format="%(message)s", force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    timestamper = structlog.processors.TimeStamper(
        fmt="iso" if settings.log_format == "json" else "%H:%M:%S"
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            timestamper,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _renderer(settings.log_format),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_cache_operation(logger: structlog.BoundLogger, operation: str, key: str,
                        hit: Optional[bool] = None, **context: Any) -> None:
    """Debug-level trace of one cache call."""
    if hit is not None:
        context["cache_hit"] = hit
    logger.debug("Cache operation", operation=operation, cache_key=key, **context)


def log_backup_operation(logger: structlog.BoundLogger, event: str, backup_id: str,
                         duration_ms: float, **context: Any) -> None:
    """Info-level record of a finished backup or restore."""
    logger.info(event, backup_id=backup_id, duration_ms=round(duration_ms), **context)
