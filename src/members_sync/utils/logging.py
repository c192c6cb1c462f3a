"""Logging configuration and utilities."""

import functools
import logging
import logging.handlers
import sys
import time
from pathlib import Path
from typing import Any, Optional

import structlog
import colorlog
from structlog.typing import Processor

from ..config.settings import get_settings


# Libraries that log every request or statement at INFO
NOISY_LOGGERS = ("aiohttp.access", "apscheduler.executors.default", "sqlalchemy.engine")


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """Configure structlog and the stdlib handlers it writes through.

    structlog renders each event (JSON or key/value console format) and the
    stdlib handlers add level coloring on the console and rotation on disk.
    Values bound with ``bind_sync_context`` appear on every line of a run.
    """
    settings = get_settings()

    level = (log_level or settings.logging.level).upper()
    format_type = log_format or settings.logging.format
    file_path = log_file or settings.logging.file_path

    root = logging.getLogger()
    root.setLevel(getattr(logging, level))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    setup_console_logging(level)
    if file_path:
        setup_file_logging(file_path, level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))


def setup_file_logging(file_path: str, level: str) -> None:
    """Append rendered events to a rotating log file."""
    log_file = Path(file_path)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding="utf-8"
    )
    file_handler.setLevel(getattr(logging, level))
    file_handler.setFormatter(logging.Formatter("%(message)s"))

    logging.getLogger().addHandler(file_handler)


def setup_console_logging(level: str) -> None:
    """Log to stdout with the level name colored."""
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level))
    console_handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(levelname)-8s%(reset)s %(message)s",
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        }
    ))

    logging.getLogger().addHandler(console_handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_sync_context(**values: Any) -> None:
    """Attach key/values to every log line of the current sync run."""
    structlog.contextvars.bind_contextvars(**values)


def clear_sync_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_execution_time(func):
    """Log how long a store or batch operation took (debug on success)."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(
                "Operation failed",
                operation=func.__qualname__,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error=str(e)
            )
            raise

        logger.debug(
            "Operation completed",
            operation=func.__qualname__,
            duration_ms=round((time.perf_counter() - started) * 1000, 2)
        )
        return result

    return wrapper


def log_async_execution_time(func):
    """Log how long a remote call or sync phase took."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        started = time.perf_counter()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            logger.error(
                "Async operation failed",
                operation=func.__qualname__,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error=str(e)
            )
            raise

        logger.info(
            "Async operation completed",
            operation=func.__qualname__,
            duration_ms=round((time.perf_counter() - started) * 1000, 2)
        )
        return result

    return wrapper
