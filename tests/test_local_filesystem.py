"""Tests for the local filesystem adapter."""

import os
import sys
import hashlib
from datetime import datetime, timedelta, timezone

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from peersync.filesystem import FileSystemError, LocalFileSystem


@pytest.fixture
def fs():
    return LocalFileSystem()


def test_exists(fs, tmp_path):
    (tmp_path / "file.txt").write_text("x")

    assert fs.exists(str(tmp_path))
    assert not fs.exists(str(tmp_path / "missing"))
    assert not fs.exists(str(tmp_path / "file.txt"))


def test_list_files_recursive(fs, tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "b").mkdir()
    (tmp_path / "a" / "b" / "deep.json").write_text("{}")
    (tmp_path / "top.png").write_bytes(b"\x89PNG")

    entries = {e.relative_path: e for e in fs.list_files_recursive(str(tmp_path))}

    assert set(entries) == {"a/b/deep.json", "top.png"}
    assert entries["top.png"].size_bytes == 4
    assert entries["top.png"].content_type == "image/png"
    assert entries["a/b/deep.json"].modified_at.tzinfo is not None
    assert all(e.readable for e in entries.values())


def test_list_missing_folder_raises(fs, tmp_path):
    with pytest.raises(FileNotFoundError):
        fs.list_files_recursive(str(tmp_path / "missing"))


def test_compute_hash(fs, tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(b"peersync" * 10000)

    assert fs.compute_hash(str(path)) == hashlib.md5(b"peersync" * 10000).hexdigest()
    assert LocalFileSystem("sha256").compute_hash(str(path)) == hashlib.sha256(b"peersync" * 10000).hexdigest()
    assert fs.compute_hash(str(tmp_path / "missing")) == ""


def test_unknown_hash_algorithm(tmp_path):
    with pytest.raises(ValueError):
        LocalFileSystem("not-a-hash")


def test_copy_into_creates_parents(fs, tmp_path):
    written = fs.copy_into(str(tmp_path / "dest"), "x/y/z.txt", b"content")

    assert written == str((tmp_path / "dest" / "x" / "y" / "z.txt").resolve())
    assert (tmp_path / "dest" / "x" / "y" / "z.txt").read_bytes() == b"content"
    assert not (tmp_path / "dest" / "x" / "y" / "z.txt.partial").exists()


def test_copy_into_overwrites(fs, tmp_path):
    fs.copy_into(str(tmp_path), "a.txt", b"old")
    fs.copy_into(str(tmp_path), "a.txt", b"new")

    assert (tmp_path / "a.txt").read_bytes() == b"new"


def test_copy_into_keeps_sender_mtime(fs, tmp_path):
    sent_at = datetime(2024, 1, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)

    fs.copy_into(str(tmp_path), "a.txt", b"data", modified_at=sent_at)

    assert os.stat(tmp_path / "a.txt").st_mtime == pytest.approx(sent_at.timestamp(), abs=0.001)
    listed = fs.list_files_recursive(str(tmp_path))[0]
    assert abs(listed.modified_at - sent_at) < timedelta(milliseconds=1)


@pytest.mark.parametrize("relative_path", ["../escape.txt", "a/../../escape.txt", "/etc/passwd", ""])
def test_copy_into_refuses_unsafe_paths(fs, tmp_path, relative_path):
    with pytest.raises(FileSystemError):
        fs.copy_into(str(tmp_path / "dest"), relative_path, b"x")

    assert not (tmp_path / "escape.txt").exists()


def test_read_and_delete(fs, tmp_path):
    path = tmp_path / "a.txt"
    path.write_bytes(b"abc")

    assert fs.read_file(str(path)) == b"abc"
    assert fs.delete(str(path))
    assert not path.exists()
    assert fs.delete(str(path))
