"""Peer-to-peer control protocol."""

from .messages import (
    MESSAGE_TYPES,
    BaseMessage,
    ConflictDetected,
    ConflictResolutionMessage,
    FileRecordPayload,
    FileTransferComplete,
    FileTransferStart,
    Message,
    SyncAccepted,
    SyncCancelled,
    SyncPaused,
    SyncRequest,
    SyncResumed,
)
from .codec import MalformedMessageError, ProtocolCodec, ProtocolError

__all__ = [
    "MESSAGE_TYPES",
    "BaseMessage",
    "ConflictDetected",
    "ConflictResolutionMessage",
    "FileRecordPayload",
    "FileTransferComplete",
    "FileTransferStart",
    "Message",
    "SyncAccepted",
    "SyncCancelled",
    "SyncPaused",
    "SyncRequest",
    "SyncResumed",
    "MalformedMessageError",
    "ProtocolCodec",
    "ProtocolError",
]
