"""Base filesystem capability used by catalogs and the orchestrator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class RawFileEntry:
    """Raw metadata for one entry found while listing a folder.

    Entries the filesystem could not read carry an ``error`` and no usable
    metadata; catalogs skip them and count a warning.
    """

    relative_path: str
    absolute_path: str
    size_bytes: int = 0
    modified_at: Optional[datetime] = None
    content_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def readable(self) -> bool:
        return self.error is None


class BaseFileSystem(ABC):
    """Abstract filesystem capability.

    The sync core never touches OS file handles itself; everything goes
    through an implementation of this interface.
    """

    @abstractmethod
    def exists(self, folder_path: str) -> bool:
        """Return True if ``folder_path`` is an existing directory."""
        pass

    @abstractmethod
    def list_files_recursive(self, folder_path: str) -> List[RawFileEntry]:
        """List regular files under ``folder_path``.

        Raises:
            FileNotFoundError: If the folder does not exist
        """
        pass

    @abstractmethod
    def compute_hash(self, absolute_path: str) -> str:
        """Return the hex digest of a file's content, or "" if unreadable."""
        pass

    @abstractmethod
    def read_file(self, absolute_path: str) -> bytes:
        """Return a file's full content."""
        pass

    @abstractmethod
    def copy_into(
        self,
        dest_folder: str,
        relative_path: str,
        data: bytes,
        modified_at: Optional[datetime] = None
    ) -> str:
        """Write ``data`` to ``dest_folder/relative_path``, creating parents.

        ``modified_at`` is the sender's modification time. When given, the
        written file carries it, so the next diff sees both copies as equal.

        Returns:
            The absolute path written
        """
        pass

    @abstractmethod
    def delete(self, absolute_path: str) -> bool:
        """Delete a file; returns True if it is gone afterwards."""
        pass


class FileSystemError(Exception):
    """Raised when a filesystem operation fails."""
    pass
