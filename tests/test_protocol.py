"""Tests for protocol messages and the JSON codec."""

import os
import sys
import json
from datetime import datetime, timezone

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from peersync.core.catalog import FileRecord
from peersync.core.conflicts import Resolution
from peersync.protocol import (
    MESSAGE_TYPES,
    ConflictDetected,
    ConflictResolutionMessage,
    FileRecordPayload,
    FileTransferComplete,
    MalformedMessageError,
    ProtocolCodec,
    SyncAccepted,
    SyncPaused,
    SyncRequest,
)

T1 = datetime(2024, 5, 17, 8, 30, 15, 250000, tzinfo=timezone.utc)


@pytest.fixture
def codec():
    return ProtocolCodec()


def sample_record(path="docs/a.txt") -> FileRecord:
    return FileRecord(
        relative_path=path,
        absolute_path=f"/home/me/{path}",
        size_bytes=1234,
        modified_at=T1,
        content_type="text/plain",
        content_hash="abc123"
    )


def test_every_message_type_is_registered():
    assert set(MESSAGE_TYPES) == {
        "sync_request", "sync_accepted", "sync_paused", "sync_resumed", "sync_cancelled",
        "conflict_detected", "conflict_resolution", "file_transfer_start", "file_transfer_complete",
    }
    for name, model in MESSAGE_TYPES.items():
        assert model.model_fields["type"].default == name


def test_sync_request_wire_format(codec):
    request = SyncRequest(
        session_id="s1",
        source_path="/home/me",
        two_way=True,
        files=[FileRecordPayload.from_record(sample_record())],
        display_name="Phone"
    )

    wire = json.loads(codec.encode(request))

    assert wire["type"] == "sync_request"
    assert wire["session_id"] == "s1"
    assert wire["two_way"] is True
    assert wire["files"][0]["relative_path"] == "docs/a.txt"
    assert wire["files"][0]["modified_at"] == 1715934615250


def test_sync_request_preserves_file_records(codec):
    request = SyncRequest(
        session_id="s1",
        source_path="/home/me",
        files=[FileRecordPayload.from_record(sample_record("a")), FileRecordPayload.from_record(sample_record("b"))]
    )

    decoded = codec.decode(codec.encode(request))

    assert isinstance(decoded, SyncRequest)
    assert decoded.records() == [sample_record("a"), sample_record("b")]
    assert decoded.two_way is False
    assert decoded.display_name is None


def test_sync_accepted_optional_fields(codec):
    plain = codec.decode(b'{"type": "sync_accepted", "session_id": "s1"}')
    assert plain.requested is None
    assert plain.records() == []

    full = codec.decode(codec.encode(SyncAccepted(
        session_id="s1",
        requested=["a.txt"],
        files=[FileRecordPayload.from_record(sample_record())]
    )))
    assert full.requested == ["a.txt"]
    assert full.records()[0].content_hash == "abc123"


def test_conflict_messages(codec):
    detected = codec.decode(codec.encode(ConflictDetected(
        session_id="s1",
        path="docs/a.txt",
        local_version=FileRecordPayload.from_record(sample_record()),
        remote_version=FileRecordPayload.from_record(sample_record())
    )))
    assert detected.local_version.to_record() == sample_record()

    resolution = codec.decode(b'{"type": "conflict_resolution", "session_id": "s1", '
                              b'"path": "a", "resolution": "keep_remote"}')
    assert isinstance(resolution, ConflictResolutionMessage)
    assert resolution.resolution is Resolution.KEEP_REMOTE


def test_unresolved_is_not_a_valid_resolution(codec):
    with pytest.raises(MalformedMessageError):
        codec.decode(b'{"type": "conflict_resolution", "session_id": "s1", '
                     b'"path": "a", "resolution": "unresolved"}')


def test_unknown_type_is_ignored(codec):
    assert codec.decode(b'{"type": "sync_turbo_mode", "session_id": "s1"}') is None


def test_unknown_fields_are_ignored(codec):
    message = codec.decode(b'{"type": "sync_paused", "session_id": "s1", "added_later": 42}')
    assert message == SyncPaused(session_id="s1")


def test_accepts_text_input(codec):
    message = codec.decode('{"type": "file_transfer_complete", "session_id": "s1", "path": "a", "success": false}')
    assert message == FileTransferComplete(session_id="s1", path="a", success=False)


@pytest.mark.parametrize("payload", [
    b"not json at all",
    b"\xff\xfe",
    b"[1, 2, 3]",
    b'{"session_id": "s1"}',
    b'{"type": 7, "session_id": "s1"}',
    b'{"type": "sync_paused"}',
    b'{"type": "sync_paused", "session_id": ""}',
    b'{"type": "file_transfer_start", "session_id": "s1", "path": "a", "size_bytes": -1}',
    b'{"type": "file_transfer_complete", "session_id": "s1", "path": "a"}',
])
def test_malformed_payloads_raise(codec, payload):
    with pytest.raises(MalformedMessageError) as exc_info:
        codec.decode(payload)

    assert exc_info.value.code == "malformed_message"
