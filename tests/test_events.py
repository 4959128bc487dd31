"""Tests for the event channel."""

import os
import sys

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from peersync.core.errors import BusyError
from peersync.core.events import ErrorInfo, EventChannel, EventType, SyncEvent


def test_subscribers_receive_their_event_type():
    channel = EventChannel()
    progress, everything = [], []
    channel.subscribe(EventType.PROGRESS, progress.append)
    channel.subscribe_all(everything.append)

    channel.emit(EventType.PROGRESS, "s1", processed_files=1)
    channel.emit(EventType.ERROR, "s1")

    assert [e.data["processed_files"] for e in progress] == [1]
    assert [e.type for e in everything] == [EventType.PROGRESS, EventType.ERROR]


def test_failing_handler_does_not_stop_others():
    channel = EventChannel()
    received = []

    def broken(event):
        raise RuntimeError("observer bug")

    channel.subscribe(EventType.STATUS_CHANGED, broken)
    channel.subscribe(EventType.STATUS_CHANGED, received.append)

    channel.emit(EventType.STATUS_CHANGED, "s1", old_status="idle", new_status="scanning")

    assert len(received) == 1


def test_unsubscribe():
    channel = EventChannel()
    received = []
    channel.subscribe(EventType.PROGRESS, received.append)
    channel.subscribe_all(received.append)

    channel.unsubscribe(received.append)
    channel.emit(EventType.PROGRESS)

    assert received == []


def test_history_and_drain():
    channel = EventChannel(max_history=3)
    for i in range(5):
        channel.publish(SyncEvent(type=EventType.PROGRESS, data={"i": i}))

    assert [e.data["i"] for e in channel.history()] == [2, 3, 4]
    assert [e.data["i"] for e in channel.history(limit=1)] == [4]
    assert [e.data["i"] for e in channel.drain()] == [2, 3, 4]
    assert channel.drain() == []

    channel.emit(EventType.ERROR)
    assert [e.type for e in channel.drain()] == [EventType.ERROR]
    assert channel.history(EventType.ERROR)[0].type is EventType.ERROR


def test_error_info_from_exception():
    info = ErrorInfo.from_exception("session", BusyError("already syncing"), "s1")

    assert info == ErrorInfo(category="session", code="busy", message="already syncing", session_id="s1")
    assert ErrorInfo.from_exception("transport", TimeoutError("slow")).code == "TimeoutError"
