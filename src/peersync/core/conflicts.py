"""Conflict detection and resolution for paths changed on both peers."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from .catalog import FileRecord
from .errors import ConflictAlreadyResolvedError
from ..utils.logging import get_logger


class Resolution(str, Enum):
    """How a conflict was (or should be) settled."""
    UNRESOLVED = "unresolved"
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    KEEP_NEWEST = "keep_newest"

    def mirrored(self) -> "Resolution":
        """The same decision seen from the other peer."""
        if self is Resolution.KEEP_LOCAL:
            return Resolution.KEEP_REMOTE
        if self is Resolution.KEEP_REMOTE:
            return Resolution.KEEP_LOCAL
        return self


class Side(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class ConflictRecord:
    """Competing local and remote versions of one path."""

    relative_path: str
    local_version: FileRecord
    remote_version: FileRecord
    resolution: Resolution = Resolution.UNRESOLVED
    winner: Optional[Side] = None
    # Left out of the session's transfers; the winner moves once it is settled
    deferred: bool = False

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not Resolution.UNRESOLVED

    @property
    def winning_version(self) -> Optional[FileRecord]:
        if self.winner is Side.LOCAL:
            return self.local_version
        if self.winner is Side.REMOTE:
            return self.remote_version
        return None

    @property
    def effective_resolution(self) -> Resolution:
        """keep_local/keep_remote as actually applied (keep_newest collapses to one of them)."""
        if self.winner is Side.LOCAL:
            return Resolution.KEEP_LOCAL
        if self.winner is Side.REMOTE:
            return Resolution.KEEP_REMOTE
        return Resolution.UNRESOLVED


class ConflictResolver:
    """Detects conflicts and settles them by strategy.

    Holds the conflicts of one session, keyed by relative path. A resolved
    record is final: resolving it again with a strategy that picks the same
    winner is a no-op, with one that picks the other side an error.
    """

    def __init__(self):
        self._records: Dict[str, ConflictRecord] = {}
        self.logger = get_logger(self.__class__.__name__)

    def detect(self, source: Optional[FileRecord], target: Optional[FileRecord]) -> Optional[ConflictRecord]:
        """Return a conflict if both versions exist and their contents differ.

        ``source`` is the local version and ``target`` the remote one. The
        caller decides whether both sides were modified; with no stored sync
        history that means the path is added or modified in both directions.
        """
        if source is None or target is None:
            return None
        if source.relative_path != target.relative_path:
            raise ValueError(
                f"Cannot compare different paths: {source.relative_path} vs {target.relative_path}"
            )
        if source.same_content(target):
            return None

        return ConflictRecord(
            relative_path=source.relative_path,
            local_version=source,
            remote_version=target
        )

    def register(self, record: ConflictRecord) -> ConflictRecord:
        """Track a conflict; an already tracked path keeps its current record."""
        existing = self._records.get(record.relative_path)
        if existing is not None:
            return existing
        self._records[record.relative_path] = record
        self.logger.info("Conflict registered", path=record.relative_path)
        return record

    def defer(self, relative_path: str) -> Optional[ConflictRecord]:
        """Mark a tracked conflict as left out of the session's transfers."""
        current = self._records.get(relative_path)
        if current is None or current.deferred:
            return current
        deferred = replace(current, deferred=True)
        self._records[relative_path] = deferred
        self.logger.info("Conflict deferred", path=relative_path)
        return deferred

    def resolve(self, record: ConflictRecord, strategy: Resolution) -> FileRecord:
        """Settle a conflict and return the winning version.

        An already settled conflict returns its winner again when ``strategy``
        picks the same side. The peer's ``keep_newest`` arrives here as
        ``keep_local``/``keep_remote``, so the strategy name alone can differ.

        Raises:
            ValueError: If ``strategy`` is ``unresolved``
            ConflictAlreadyResolvedError: If the conflict was already settled
                in favour of the other side
        """
        if strategy is Resolution.UNRESOLVED:
            raise ValueError("Cannot resolve a conflict with 'unresolved'")

        current = self._records.get(record.relative_path, record)
        if current.is_resolved:
            if self._pick_winner(current, strategy) is current.winner:
                return current.winning_version
            raise ConflictAlreadyResolvedError(
                f"Conflict on {record.relative_path} already resolved with {current.resolution.value}"
            )

        winner = self._pick_winner(current, strategy)
        resolved = replace(current, resolution=strategy, winner=winner)
        self._records[resolved.relative_path] = resolved

        self.logger.info(
            "Conflict resolved",
            path=resolved.relative_path,
            strategy=strategy.value,
            winner=winner.value
        )

        return resolved.winning_version

    def get(self, relative_path: str) -> Optional[ConflictRecord]:
        return self._records.get(relative_path)

    def pending(self) -> List[ConflictRecord]:
        return [r for r in self._records.values() if not r.is_resolved]

    def resolved(self) -> List[ConflictRecord]:
        return [r for r in self._records.values() if r.is_resolved]

    def __len__(self) -> int:
        return len(self._records)

    @staticmethod
    def _pick_winner(record: ConflictRecord, strategy: Resolution) -> Side:
        if strategy is Resolution.KEEP_LOCAL:
            return Side.LOCAL
        if strategy is Resolution.KEEP_REMOTE:
            return Side.REMOTE
        # keep_newest: ties go to the local copy
        if record.remote_version.modified_at > record.local_version.modified_at:
            return Side.REMOTE
        return Side.LOCAL


def keep_newest_policy(record: ConflictRecord) -> Resolution:
    """Default conflict decision: whichever side was modified last."""
    return Resolution.KEEP_NEWEST
