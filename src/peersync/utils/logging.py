"""Logging configuration and utilities.

Every peersync component logs through structlog with key/value context. A
sync's ``session_id`` and ``peer_id`` are bound with ``session_context`` and
picked up by every log call made inside it, including calls from the
filesystem and transport layers.
"""

import functools
import inspect
import logging
import logging.handlers
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional

import structlog
import colorlog
from structlog.typing import Processor

# Root handlers installed by the last setup_logging call
_handlers: List[logging.Handler] = []


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """Configure structlog and the stdlib root logger.

    Arguments left as None fall back to ``LoggingSettings``. Calling this
    again replaces the handlers installed by the previous call.
    """
    from ..config.settings import get_settings

    settings = get_settings().logging
    level_name = (log_level or settings.level).upper()
    format_type = (log_format or settings.format).lower()
    file_path = log_file or settings.file_path
    level = getattr(logging, level_name)

    processors: List[Processor] = [
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
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    for handler in _handlers:
        root.removeHandler(handler)
        handler.close()
    _handlers.clear()

    root.setLevel(level)
    _handlers.append(_console_handler(level))
    if file_path:
        _handlers.append(_file_handler(file_path, level))
    for handler in _handlers:
        root.addHandler(handler)


def _file_handler(file_path: str, level: int) -> logging.Handler:
    """Rotating file handler writing one JSON-ish line per record."""
    Path(file_path).parent.mkdir(parents=True, exist_ok=True)

    handler = logging.handlers.RotatingFileHandler(
        file_path,
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=3,
        encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
        '"logger": "%(name)s", "event": "%(message)s"}'
    ))
    return handler


def _console_handler(level: int) -> logging.Handler:
    """Colored handler on stderr, so stdout stays free for CLI output."""
    handler = colorlog.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(colorlog.ColoredFormatter(
        "%(log_color)s%(levelname)-8s%(reset)s %(message)s",
        reset=True,
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        }
    ))
    return handler


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LoggerMixin:
    """Mixin class to add logging capabilities to any class."""

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        """Get logger instance for this class."""
        return get_logger(self.__class__.__name__)


@contextmanager
def session_context(session_id: str, **context: Any) -> Iterator[None]:
    """Bind ``session_id`` (and any extra keys) to every log call in the block.

    Bindings live in context variables, so each asyncio task sees its own.
    """
    with structlog.contextvars.bound_contextvars(session_id=session_id, **context):
        yield


def timed(operation: str):
    """Decorator logging how long a sync or async callable took, at debug level."""

    def decorator(func):
        logger = get_logger(operation)

        def report(start: float, error: Optional[BaseException] = None) -> None:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            if error is None:
                logger.debug("Operation finished", operation=operation, duration_ms=duration_ms)
            else:
                logger.debug(
                    "Operation failed",
                    operation=operation,
                    duration_ms=duration_ms,
                    error=str(error)
                )

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                start = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    report(start, e)
                    raise
                report(start)
                return result

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                report(start, e)
                raise
            report(start)
            return result

        return wrapper

    return decorator
