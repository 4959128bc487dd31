"""Tests for logging setup and helpers."""

import os
import sys
import logging

import pytest
import structlog

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from peersync.utils import logging as peersync_logging
from peersync.utils.logging import get_logger, session_context, setup_logging, timed


def test_setup_logging_replaces_its_handlers(tmp_path):
    root = logging.getLogger()
    log_file = tmp_path / "logs" / "peersync.log"

    setup_logging(log_level="debug", log_format="json", log_file=str(log_file))
    first = list(peersync_logging._handlers)
    assert len(first) == 2
    assert all(h in root.handlers for h in first)
    assert root.level == logging.DEBUG
    assert log_file.parent.is_dir()

    setup_logging(log_level="WARNING", log_format="console")
    assert not any(h in root.handlers for h in first)
    assert len(peersync_logging._handlers) == 1
    assert root.level == logging.WARNING


def test_session_context_binds_and_unbinds():
    with session_context("abc123", role="initiator"):
        bound = structlog.contextvars.get_contextvars()
        assert bound["session_id"] == "abc123"
        assert bound["role"] == "initiator"

    assert "session_id" not in structlog.contextvars.get_contextvars()


def test_timed_sync_function_keeps_result_and_metadata():
    @timed("demo.add")
    def add(a, b):
        """Add two numbers."""
        return a + b

    assert add(2, 3) == 5
    assert add.__name__ == "add"
    assert add.__doc__ == "Add two numbers."


def test_timed_reraises():
    @timed("demo.fail")
    def fail():
        raise ValueError("nope")

    with pytest.raises(ValueError, match="nope"):
        fail()


async def test_timed_async_function():
    @timed("demo.async")
    async def double(x):
        return x * 2

    assert await double(21) == 42

    @timed("demo.async_fail")
    async def broken():
        raise RuntimeError("broken")

    with pytest.raises(RuntimeError):
        await broken()


def test_get_logger_accepts_key_value_context():
    logger = get_logger("test")

    logger.info("Something happened", path="a.txt", session_id="s-1")
