"""Core sync logic: catalogs, conflicts, sessions and events.

The orchestrator lives in ``peersync.core.orchestrator``; it depends on the
protocol and transport packages, which in turn use the types exported here.
"""

from .catalog import (
    CatalogError,
    CatalogNotFoundError,
    DiffResult,
    FileCatalog,
    FileRecord,
    PartialReadWarning,
    TransferStatus,
    diff,
)
from .errors import (
    BusyError,
    ConflictAlreadyResolvedError,
    InvalidTransitionError,
    NoPeerError,
    NothingToSyncError,
    SessionError,
)
from .conflicts import ConflictRecord, ConflictResolver, Resolution, Side, keep_newest_policy
from .session import SessionRole, SessionStateMachine, SessionStatus, SyncSession
from .events import ErrorInfo, EventChannel, EventType, SyncEvent

__all__ = [
    "CatalogError",
    "CatalogNotFoundError",
    "DiffResult",
    "FileCatalog",
    "FileRecord",
    "PartialReadWarning",
    "TransferStatus",
    "diff",
    "BusyError",
    "ConflictAlreadyResolvedError",
    "InvalidTransitionError",
    "NoPeerError",
    "NothingToSyncError",
    "SessionError",
    "ConflictRecord",
    "ConflictResolver",
    "Resolution",
    "Side",
    "keep_newest_policy",
    "SessionRole",
    "SessionStateMachine",
    "SessionStatus",
    "SyncSession",
    "ErrorInfo",
    "EventChannel",
    "EventType",
    "SyncEvent",
]
