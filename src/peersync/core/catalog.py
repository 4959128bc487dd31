"""Folder catalogs: point-in-time file listings and the diff between two of them."""

import fnmatch
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..filesystem.base import DEFAULT_CONTENT_TYPE, BaseFileSystem, RawFileEntry
from ..utils.logging import get_logger, timed

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

logger = get_logger(__name__)


class TransferStatus(str, Enum):
    """Per-file transfer state within a session."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


def to_millis(moment: datetime) -> int:
    """Epoch milliseconds for a datetime (naive values are taken as UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH) // timedelta(milliseconds=1)


def from_millis(millis: int) -> datetime:
    return EPOCH + timedelta(milliseconds=millis)


def truncate_to_millis(moment: datetime) -> datetime:
    """Drop sub-millisecond precision so timestamps survive the wire unchanged."""
    return from_millis(to_millis(moment))


@dataclass(frozen=True)
class FileRecord:
    """Snapshot of one file's metadata, keyed by its relative path."""

    relative_path: str
    absolute_path: str
    size_bytes: int
    modified_at: datetime
    content_type: str = DEFAULT_CONTENT_TYPE
    content_hash: str = ""
    selected: bool = True
    transfer_status: TransferStatus = TransferStatus.PENDING

    def same_content(self, other: "FileRecord") -> bool:
        """Hashes decide when both sides have one; otherwise size and mtime."""
        if self.content_hash and other.content_hash:
            return self.content_hash == other.content_hash
        return self.size_bytes == other.size_bytes and self.modified_at == other.modified_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire representation."""
        return {
            "relative_path": self.relative_path,
            "absolute_path": self.absolute_path,
            "size_bytes": self.size_bytes,
            "modified_at": to_millis(self.modified_at),
            "content_type": self.content_type,
            "content_hash": self.content_hash,
            "selected": self.selected,
            "transfer_status": self.transfer_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        return cls(
            relative_path=data["relative_path"],
            absolute_path=data.get("absolute_path", ""),
            size_bytes=int(data["size_bytes"]),
            modified_at=from_millis(int(data["modified_at"])),
            content_type=data.get("content_type") or DEFAULT_CONTENT_TYPE,
            content_hash=data.get("content_hash") or "",
            selected=data.get("selected", True),
            transfer_status=TransferStatus(data.get("transfer_status", TransferStatus.PENDING.value)),
        )


@dataclass(frozen=True)
class DiffResult:
    """Partition of the paths of a (source, target) catalog pair."""

    added_or_modified: Tuple[str, ...] = ()
    unchanged: Tuple[str, ...] = ()
    deleted_in_source: Tuple[str, ...] = ()

    def all_paths(self) -> Tuple[str, ...]:
        return tuple(sorted(self.added_or_modified + self.unchanged + self.deleted_in_source))

    @property
    def is_empty(self) -> bool:
        """True when nothing needs to be sent."""
        return not self.added_or_modified


@dataclass
class FileCatalog:
    """Ordered, path-indexed listing of a folder taken at one point in time."""

    root: str
    records: Tuple[FileRecord, ...] = ()
    warnings: int = 0
    _index: Dict[str, FileRecord] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        ordered = sorted({r.relative_path: r for r in self.records}.values(), key=lambda r: r.relative_path)
        self.records = tuple(ordered)
        self._index = {r.relative_path: r for r in self.records}

    @classmethod
    @timed("catalog.build")
    def build(
        cls,
        folder_path: str,
        filesystem: BaseFileSystem,
        compute_hashes: bool = False,
        exclude_patterns: Sequence[str] = ()
    ) -> "FileCatalog":
        """Scan ``folder_path`` into a catalog.

        Unreadable entries are skipped and counted in ``warnings``.

        Raises:
            CatalogNotFoundError: If the folder does not exist
        """
        if not filesystem.exists(folder_path):
            raise CatalogNotFoundError(f"Folder not found: {folder_path}")

        try:
            entries = filesystem.list_files_recursive(folder_path)
        except FileNotFoundError as e:
            raise CatalogNotFoundError(f"Folder not found: {folder_path}") from e

        records: List[FileRecord] = []
        warnings = 0

        for entry in entries:
            if not entry.readable or entry.modified_at is None:
                warnings += 1
                logger.warning(
                    "Skipping unreadable entry",
                    path=entry.relative_path,
                    error=entry.error
                )
                continue

            if _is_excluded(entry.relative_path, exclude_patterns):
                continue

            records.append(cls._record_from_entry(entry, filesystem, compute_hashes))

        catalog = cls(root=folder_path, records=tuple(records), warnings=warnings)

        logger.info(
            "Catalog built",
            folder=folder_path,
            files=len(catalog),
            total_bytes=catalog.total_bytes,
            warnings=warnings
        )

        return catalog

    @classmethod
    def from_records(cls, records: Iterable[FileRecord], root: str = "") -> "FileCatalog":
        """Build a catalog from records received from a peer."""
        return cls(root=root, records=tuple(records))

    @staticmethod
    def _record_from_entry(entry: RawFileEntry, filesystem: BaseFileSystem, compute_hashes: bool) -> FileRecord:
        content_hash = filesystem.compute_hash(entry.absolute_path) if compute_hashes else ""
        return FileRecord(
            relative_path=entry.relative_path,
            absolute_path=entry.absolute_path,
            size_bytes=entry.size_bytes,
            modified_at=truncate_to_millis(entry.modified_at),
            content_type=entry.content_type or DEFAULT_CONTENT_TYPE,
            content_hash=content_hash,
        )

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[FileRecord]:
        return iter(self.records)

    def __contains__(self, relative_path: object) -> bool:
        return relative_path in self._index

    def get(self, relative_path: str) -> Optional[FileRecord]:
        return self._index.get(relative_path)

    def paths(self) -> Tuple[str, ...]:
        return tuple(r.relative_path for r in self.records)

    @property
    def total_bytes(self) -> int:
        return sum(r.size_bytes for r in self.records)

    def subset(self, relative_paths: Iterable[str]) -> "FileCatalog":
        """Catalog restricted to the given paths, keeping order."""
        wanted = set(relative_paths)
        return FileCatalog(
            root=self.root,
            records=tuple(r for r in self.records if r.relative_path in wanted),
            warnings=self.warnings
        )

    def with_selection(self, selected_paths: Iterable[str]) -> "FileCatalog":
        """Copy of the catalog where only ``selected_paths`` are selected."""
        wanted = set(selected_paths)
        return FileCatalog(
            root=self.root,
            records=tuple(replace(r, selected=r.relative_path in wanted) for r in self.records),
            warnings=self.warnings
        )


def diff(source: FileCatalog, target: FileCatalog) -> DiffResult:
    """Classify every path of ``source`` and ``target``.

    A source file is added or modified when the target lacks it, or when the
    target copy differs. Hash equality decides on its own when both records
    carry a hash; otherwise the target counts as different when it is older
    or a different size. Target-only paths are deleted in source.
    """
    added_or_modified: List[str] = []
    unchanged: List[str] = []
    deleted_in_source: List[str] = []

    for record in source:
        other = target.get(record.relative_path)
        if other is None:
            added_or_modified.append(record.relative_path)
        elif record.content_hash and other.content_hash:
            if record.content_hash == other.content_hash:
                unchanged.append(record.relative_path)
            else:
                added_or_modified.append(record.relative_path)
        elif other.modified_at < record.modified_at or other.size_bytes != record.size_bytes:
            added_or_modified.append(record.relative_path)
        else:
            unchanged.append(record.relative_path)

    for record in target:
        if record.relative_path not in source:
            deleted_in_source.append(record.relative_path)

    return DiffResult(
        added_or_modified=tuple(sorted(added_or_modified)),
        unchanged=tuple(sorted(unchanged)),
        deleted_in_source=tuple(sorted(deleted_in_source)),
    )


def _is_excluded(relative_path: str, patterns: Sequence[str]) -> bool:
    parts = PurePosixPath(relative_path).parts
    for pattern in patterns:
        if fnmatch.fnmatch(relative_path, pattern):
            return True
        if any(fnmatch.fnmatch(part, pattern) for part in parts):
            return True
    return False


class CatalogError(Exception):
    """Base exception for catalog errors."""

    code = "catalog_error"


class CatalogNotFoundError(CatalogError):
    """Raised when the folder to catalog does not exist."""

    code = "not_found"


class PartialReadWarning(CatalogError):
    """Some entries could not be read and were left out of the catalog.

    Never raised by ``build``; the orchestrator reports it as a non-fatal
    error event.
    """

    code = "partial_read_warning"
