"""Control messages exchanged between the two peers of a sync session."""

from typing import Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, Field, validator

from ..core.catalog import FileRecord, TransferStatus
from ..core.conflicts import Resolution


class FileRecordPayload(BaseModel):
    """Wire form of a FileRecord; ``modified_at`` is epoch milliseconds."""
    relative_path: str = Field(..., min_length=1)
    absolute_path: str = ""
    size_bytes: int = Field(..., ge=0)
    modified_at: int
    content_type: str = "application/octet-stream"
    content_hash: str = ""
    selected: bool = True
    transfer_status: TransferStatus = TransferStatus.PENDING

    @classmethod
    def from_record(cls, record: FileRecord) -> "FileRecordPayload":
        return cls(**record.to_dict())

    def to_record(self) -> FileRecord:
        return FileRecord.from_dict(self.model_dump(mode="json"))


class BaseMessage(BaseModel):
    """Fields shared by every message."""
    type: str
    session_id: str = Field(..., min_length=1, description="Session the message belongs to")


class SyncRequest(BaseMessage):
    """Opens a session; ``session_id`` is minted by the initiator."""
    type: Literal["sync_request"] = "sync_request"
    source_path: str
    two_way: bool = False
    files: List[FileRecordPayload] = Field(default_factory=list)
    display_name: Optional[str] = Field(None, description="Initiator's human-readable name")

    def records(self) -> List[FileRecord]:
        return [f.to_record() for f in self.files]


class SyncAccepted(BaseMessage):
    """Responder's acceptance.

    ``requested`` lists the paths the responder wants (None means every offered
    file); ``files`` lists what it sends back in two-way mode.
    """
    type: Literal["sync_accepted"] = "sync_accepted"
    requested: Optional[List[str]] = None
    files: Optional[List[FileRecordPayload]] = None

    def records(self) -> List[FileRecord]:
        return [f.to_record() for f in self.files or []]


class SyncPaused(BaseMessage):
    type: Literal["sync_paused"] = "sync_paused"


class SyncResumed(BaseMessage):
    type: Literal["sync_resumed"] = "sync_resumed"


class SyncCancelled(BaseMessage):
    type: Literal["sync_cancelled"] = "sync_cancelled"
    reason: Optional[str] = None


class ConflictDetected(BaseMessage):
    """Versions are given from the sender's point of view."""
    type: Literal["conflict_detected"] = "conflict_detected"
    path: str
    local_version: FileRecordPayload
    remote_version: FileRecordPayload


class ConflictResolutionMessage(BaseMessage):
    """Settled conflict; ``resolution`` is keep_local/keep_remote as seen by the sender."""
    type: Literal["conflict_resolution"] = "conflict_resolution"
    path: str
    resolution: Resolution

    @validator('resolution')
    def validate_resolution(cls, v):
        if v == Resolution.UNRESOLVED:
            raise ValueError("resolution must not be 'unresolved'")
        return v


class FileTransferStart(BaseMessage):
    type: Literal["file_transfer_start"] = "file_transfer_start"
    path: str
    size_bytes: int = Field(..., ge=0)


class FileTransferComplete(BaseMessage):
    type: Literal["file_transfer_complete"] = "file_transfer_complete"
    path: str
    success: bool


Message = Union[
    SyncRequest,
    SyncAccepted,
    SyncPaused,
    SyncResumed,
    SyncCancelled,
    ConflictDetected,
    ConflictResolutionMessage,
    FileTransferStart,
    FileTransferComplete,
]

MESSAGE_TYPES: Dict[str, Type[BaseMessage]] = {
    "sync_request": SyncRequest,
    "sync_accepted": SyncAccepted,
    "sync_paused": SyncPaused,
    "sync_resumed": SyncResumed,
    "sync_cancelled": SyncCancelled,
    "conflict_detected": ConflictDetected,
    "conflict_resolution": ConflictResolutionMessage,
    "file_transfer_start": FileTransferStart,
    "file_transfer_complete": FileTransferComplete,
}
