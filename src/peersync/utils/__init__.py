"""Shared utilities."""

from .logging import (
    setup_logging,
    get_logger,
    LoggerMixin,
    session_context,
    timed
)

__all__ = [
    "setup_logging",
    "get_logger",
    "LoggerMixin",
    "session_context",
    "timed"
]
