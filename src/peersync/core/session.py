"""Sync session lifecycle: status transitions, progress counters and per-file state."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .catalog import FileCatalog, FileRecord, TransferStatus
from .conflicts import ConflictResolver
from .errors import InvalidTransitionError, NothingToSyncError
from ..utils.logging import get_logger


class SessionStatus(str, Enum):
    """Lifecycle states of a sync session."""
    IDLE = "idle"
    SCANNING = "scanning"
    PREPARING = "preparing"
    SYNCING = "syncing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


ACTIVE_STATUSES = frozenset({
    SessionStatus.SCANNING,
    SessionStatus.PREPARING,
    SessionStatus.SYNCING,
    SessionStatus.PAUSED,
})

TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
})

# Allowed moves; terminal states have no way out
TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.IDLE: frozenset({SessionStatus.SCANNING, SessionStatus.PREPARING}),
    SessionStatus.SCANNING: frozenset({SessionStatus.PREPARING, SessionStatus.IDLE}),
    SessionStatus.PREPARING: frozenset({
        SessionStatus.SYNCING, SessionStatus.IDLE, SessionStatus.CANCELLED, SessionStatus.FAILED,
    }),
    SessionStatus.SYNCING: frozenset({
        SessionStatus.PAUSED, SessionStatus.CANCELLED, SessionStatus.FAILED, SessionStatus.COMPLETED,
    }),
    SessionStatus.PAUSED: frozenset({SessionStatus.SYNCING, SessionStatus.CANCELLED, SessionStatus.FAILED}),
}

StatusListener = Callable[[SessionStatus, SessionStatus], None]


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class SyncSession:
    """One side's view of a sync session; the two sides share only ``id``."""

    id: str
    peer_id: str
    peer_display_name: str
    source_path: str
    target_path: str
    two_way: bool
    role: SessionRole
    status: SessionStatus = SessionStatus.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    files: FileCatalog = field(default_factory=lambda: FileCatalog(root=""))
    incoming: FileCatalog = field(default_factory=lambda: FileCatalog(root=""))

    @property
    def local_root(self) -> str:
        """Folder on this side that received files are written into."""
        if self.role is SessionRole.INITIATOR:
            return self.source_path
        return self.target_path

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "peer_id": self.peer_id,
            "peer_display_name": self.peer_display_name,
            "source_path": self.source_path,
            "target_path": self.target_path,
            "two_way": self.two_way,
            "role": self.role.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "files": len(self.files),
            "incoming": len(self.incoming),
        }


@dataclass
class _FileState:
    selected: bool = True
    transfer_status: TransferStatus = TransferStatus.PENDING


class SessionStateMachine:
    """Owns the lifecycle of one sync session.

    The machine does no I/O. Every status change goes through ``_transition``,
    which rejects moves not listed in ``TRANSITIONS`` and leaves the status
    untouched when it does. ``total_files``/``total_bytes`` are fixed when the
    session starts syncing and never recomputed.
    """

    def __init__(self, session: SyncSession, on_transition: Optional[StatusListener] = None):
        self.session = session
        self.conflicts = ConflictResolver()
        self.on_transition = on_transition
        self.logger = get_logger(self.__class__.__name__).bind(session_id=session.id)

        self.total_files = 0
        self.processed_files = 0
        self.total_bytes = 0
        self.transferred_bytes = 0

        self._outgoing: Dict[str, _FileState] = {}
        self._incoming: Dict[str, _FileState] = {}

    # Status

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _transition(self, new_status: SessionStatus) -> None:
        old_status = self.session.status
        if new_status not in TRANSITIONS.get(old_status, frozenset()):
            raise InvalidTransitionError(
                f"Cannot move from {old_status.value} to {new_status.value}"
            )

        self.session.status = new_status
        if new_status in TERMINAL_STATUSES:
            self.session.ended_at = datetime.now(timezone.utc)

        self.logger.info("Session status changed", old_status=old_status.value, new_status=new_status.value)

        if self.on_transition is not None:
            self.on_transition(old_status, new_status)

    def _require(self, *allowed: SessionStatus, action: str) -> None:
        if self.status not in allowed:
            raise InvalidTransitionError(f"Cannot {action} while {self.status.value}")

    def begin_scan(self) -> None:
        self._require(SessionStatus.IDLE, action="scan")
        self._transition(SessionStatus.SCANNING)

    def catalog_ready(self, catalog: FileCatalog) -> None:
        """Attach the scanned catalog; an empty one sends the session back to idle."""
        self._require(SessionStatus.SCANNING, action="attach a catalog")
        if len(catalog) == 0:
            self._transition(SessionStatus.IDLE)
            raise NothingToSyncError(f"No files to sync in {catalog.root or self.session.source_path}")

        self._set_outgoing(catalog)
        self._transition(SessionStatus.PREPARING)

    def abort_scan(self) -> None:
        self._require(SessionStatus.SCANNING, action="abort a scan")
        self._transition(SessionStatus.IDLE)

    def prepare_incoming(self, offered: FileCatalog) -> None:
        """Responder side: record the catalog the initiator offered."""
        self._require(SessionStatus.IDLE, action="prepare an incoming sync")
        self._set_incoming(offered)
        self._transition(SessionStatus.PREPARING)

    def abandon_request(self) -> None:
        """Back to idle when the request or acceptance could not be delivered."""
        self._require(SessionStatus.PREPARING, action="abandon the request")
        self._transition(SessionStatus.IDLE)

    def start_transfer(self) -> None:
        """Fix the totals from the selected outgoing and the expected incoming files."""
        self._require(SessionStatus.PREPARING, action="start transferring")

        outgoing = self.selected_files()
        incoming = [r for r in self.session.incoming if self._incoming[r.relative_path].selected]

        self.total_files = len(outgoing) + len(incoming)
        self.total_bytes = sum(r.size_bytes for r in outgoing) + sum(r.size_bytes for r in incoming)
        self.processed_files = 0
        self.transferred_bytes = 0

        self._transition(SessionStatus.SYNCING)

        self.logger.info(
            "Transfer started",
            total_files=self.total_files,
            total_bytes=self.total_bytes,
            outgoing=len(outgoing),
            incoming=len(incoming)
        )

    def pause(self) -> None:
        self._require(SessionStatus.SYNCING, action="pause")
        self._transition(SessionStatus.PAUSED)

    def resume(self) -> None:
        self._require(SessionStatus.PAUSED, action="resume")
        self._transition(SessionStatus.SYNCING)
        self.maybe_complete()

    def cancel(self) -> None:
        self._require(SessionStatus.SYNCING, SessionStatus.PAUSED, action="cancel")
        self._transition(SessionStatus.CANCELLED)

    def decline(self) -> None:
        """The peer turned the request down before any transfer."""
        self._require(SessionStatus.PREPARING, action="decline")
        self._transition(SessionStatus.CANCELLED)

    def fail(self) -> None:
        self._require(SessionStatus.PREPARING, SessionStatus.SYNCING, SessionStatus.PAUSED, action="fail")
        self._transition(SessionStatus.FAILED)

    def maybe_complete(self) -> bool:
        """Complete the session once every expected file has been processed."""
        if self.status is SessionStatus.SYNCING and self.processed_files >= self.total_files:
            self._transition(SessionStatus.COMPLETED)
            return True
        return False

    # Progress

    @property
    def file_progress(self) -> float:
        if self.total_files == 0:
            return 0.0
        return self.processed_files / self.total_files

    @property
    def byte_progress(self) -> float:
        if self.total_bytes == 0:
            return 0.0
        return self.transferred_bytes / self.total_bytes

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session.id,
            "status": self.status.value,
            "role": self.session.role.value,
            "processed_files": self.processed_files,
            "total_files": self.total_files,
            "transferred_bytes": self.transferred_bytes,
            "total_bytes": self.total_bytes,
            "file_progress": self.file_progress,
            "byte_progress": self.byte_progress,
            "pending_conflicts": len(self.conflicts.pending()),
        }

    # Per-file state

    def _set_outgoing(self, catalog: FileCatalog) -> None:
        self.session.files = catalog
        self._outgoing = {
            r.relative_path: _FileState(selected=r.selected) for r in catalog
        }

    def _set_incoming(self, catalog: FileCatalog) -> None:
        self.session.incoming = catalog
        self._incoming = {
            r.relative_path: _FileState(selected=r.selected) for r in catalog
        }

    def set_outgoing(self, catalog: FileCatalog) -> None:
        """Replace the outgoing catalog (responder sending files back in two-way mode)."""
        self._require(SessionStatus.PREPARING, action="change outgoing files")
        self._set_outgoing(catalog)

    def set_incoming(self, catalog: FileCatalog) -> None:
        """Replace the expected incoming catalog before the transfer starts."""
        self._require(SessionStatus.IDLE, SessionStatus.PREPARING, action="change incoming files")
        self._set_incoming(catalog)

    def select(self, relative_path: str, selected: bool = True) -> None:
        """Include or exclude an outgoing file; only before the transfer starts."""
        self._require(SessionStatus.SCANNING, SessionStatus.PREPARING, action="change the selection")
        if relative_path not in self._outgoing:
            raise KeyError(relative_path)
        self._outgoing[relative_path].selected = selected

    def restrict_selection(self, relative_paths) -> None:
        """Select exactly ``relative_paths`` among the outgoing files."""
        wanted = set(relative_paths)
        for path in self._outgoing:
            self.select(path, path in wanted)

    def record(self, relative_path: str) -> FileRecord:
        """Value copy of an outgoing file with its current session state."""
        base = self.session.files.get(relative_path)
        if base is None:
            raise KeyError(relative_path)
        state = self._outgoing[relative_path]
        return replace(base, selected=state.selected, transfer_status=state.transfer_status)

    def incoming_record(self, relative_path: str) -> Optional[FileRecord]:
        base = self.session.incoming.get(relative_path)
        if base is None:
            return None
        state = self._incoming[relative_path]
        return replace(base, selected=state.selected, transfer_status=state.transfer_status)

    def selected_files(self) -> List[FileRecord]:
        """Selected outgoing files in catalog order."""
        return [
            self.record(r.relative_path)
            for r in self.session.files
            if self._outgoing[r.relative_path].selected
        ]

    def expects_incoming(self, relative_path: str) -> bool:
        state = self._incoming.get(relative_path)
        return state is not None and state.selected

    def mark_in_progress(self, relative_path: str) -> None:
        self._outgoing[relative_path].transfer_status = TransferStatus.IN_PROGRESS

    def record_sent(self, relative_path: str, success: bool) -> None:
        """Count one outgoing file as processed."""
        state = self._outgoing[relative_path]
        self._count(state, self.session.files.get(relative_path), success)

    def mark_receiving(self, relative_path: str) -> None:
        state = self._incoming.get(relative_path)
        if state is not None:
            state.transfer_status = TransferStatus.IN_PROGRESS

    def record_received(self, relative_path: str, success: bool) -> bool:
        """Count one incoming file as processed; False if it was not expected."""
        state = self._incoming.get(relative_path)
        if state is None or not state.selected:
            self.logger.warning("Completion for unexpected file ignored", path=relative_path)
            return False
        if state.transfer_status in (TransferStatus.DONE, TransferStatus.FAILED):
            self.logger.warning("Duplicate completion ignored", path=relative_path)
            return False
        self._count(state, self.session.incoming.get(relative_path), success)
        return True

    def _count(self, state: _FileState, record: Optional[FileRecord], success: bool) -> None:
        state.transfer_status = TransferStatus.DONE if success else TransferStatus.FAILED
        self.processed_files += 1
        if success and record is not None:
            self.transferred_bytes += record.size_bytes
