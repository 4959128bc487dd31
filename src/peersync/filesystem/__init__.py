"""Filesystem capability package."""

from .base import BaseFileSystem, FileSystemError, RawFileEntry
from .local import LocalFileSystem

__all__ = [
    "BaseFileSystem",
    "FileSystemError",
    "RawFileEntry",
    "LocalFileSystem"
]
