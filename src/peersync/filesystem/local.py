"""Local disk implementation of the filesystem capability."""

import hashlib
import mimetypes
import os
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import List, Optional

from .base import DEFAULT_CONTENT_TYPE, BaseFileSystem, FileSystemError, RawFileEntry
from ..utils.logging import LoggerMixin


class LocalFileSystem(LoggerMixin, BaseFileSystem):
    """Filesystem capability backed by the local disk."""

    def __init__(self, hash_algorithm: str = "md5", chunk_size: int = 65536):
        if hash_algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported hash algorithm: {hash_algorithm}")
        self.hash_algorithm = hash_algorithm
        self.chunk_size = chunk_size

    def exists(self, folder_path: str) -> bool:
        return Path(folder_path).expanduser().is_dir()

    def list_files_recursive(self, folder_path: str) -> List[RawFileEntry]:
        root = Path(folder_path).expanduser()
        if not root.is_dir():
            raise FileNotFoundError(f"Folder not found: {folder_path}")

        entries: List[RawFileEntry] = []

        def on_walk_error(error: OSError):
            # Unreadable subdirectory: report it, keep walking the rest
            failed = Path(error.filename) if error.filename else root
            entries.append(RawFileEntry(
                relative_path=self._relative(root, failed),
                absolute_path=str(failed),
                error=error.strerror or str(error)
            ))

        for dirpath, _dirnames, filenames in os.walk(root, onerror=on_walk_error):
            for filename in filenames:
                path = Path(dirpath) / filename
                relative_path = self._relative(root, path)
                try:
                    stat = path.stat()
                except OSError as e:
                    entries.append(RawFileEntry(
                        relative_path=relative_path,
                        absolute_path=str(path),
                        error=e.strerror or str(e)
                    ))
                    continue

                if not path.is_file():
                    continue

                content_type, _ = mimetypes.guess_type(filename)
                entries.append(RawFileEntry(
                    relative_path=relative_path,
                    absolute_path=str(path),
                    size_bytes=stat.st_size,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    content_type=content_type or DEFAULT_CONTENT_TYPE
                ))

        self.logger.debug("Listed folder", folder=str(root), entries=len(entries))
        return entries

    def compute_hash(self, absolute_path: str) -> str:
        digest = hashlib.new(self.hash_algorithm)
        try:
            with open(absolute_path, "rb") as f:
                for chunk in iter(lambda: f.read(self.chunk_size), b""):
                    digest.update(chunk)
        except OSError as e:
            self.logger.warning("Failed to hash file", path=absolute_path, error=str(e))
            return ""
        return digest.hexdigest()

    def read_file(self, absolute_path: str) -> bytes:
        return Path(absolute_path).read_bytes()

    def copy_into(
        self,
        dest_folder: str,
        relative_path: str,
        data: bytes,
        modified_at: Optional[datetime] = None
    ) -> str:
        destination = self._safe_join(dest_folder, relative_path)
        destination.parent.mkdir(parents=True, exist_ok=True)

        # Write next to the destination, then swap in place
        partial = destination.with_name(destination.name + ".partial")
        try:
            partial.write_bytes(data)
            if modified_at is not None:
                timestamp = modified_at.timestamp()
                os.utime(partial, (timestamp, timestamp))
            os.replace(partial, destination)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise FileSystemError(f"Failed to write {relative_path}: {e}") from e

        self.logger.debug("Wrote file", path=str(destination), size_bytes=len(data))
        return str(destination)

    def delete(self, absolute_path: str) -> bool:
        path = Path(absolute_path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.warning("Failed to delete file", path=absolute_path, error=str(e))
            return False
        return True

    @staticmethod
    def _relative(root: Path, path: Path) -> str:
        return path.relative_to(root).as_posix()

    @staticmethod
    def _safe_join(dest_folder: str, relative_path: str) -> Path:
        """Join a peer-supplied relative path, refusing anything that escapes the folder."""
        relative = PurePosixPath(relative_path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise FileSystemError(f"Refusing unsafe relative path: {relative_path!r}")

        root = Path(dest_folder).expanduser().resolve()
        return root.joinpath(*relative.parts)
