"""Tests for folder catalogs and the catalog diff."""

import os
import sys
import hashlib
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from peersync.config.settings import DEFAULT_EXCLUDE_PATTERNS
from peersync.core.catalog import (
    CatalogNotFoundError,
    FileCatalog,
    FileRecord,
    TransferStatus,
    diff,
    from_millis,
    to_millis,
    truncate_to_millis,
)
from peersync.filesystem import BaseFileSystem, LocalFileSystem, RawFileEntry

T1 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(hours=1)


def record(path: str, size: int = 100, modified_at: datetime = T1, content_hash: str = "") -> FileRecord:
    return FileRecord(
        relative_path=path,
        absolute_path=f"/data/{path}",
        size_bytes=size,
        modified_at=modified_at,
        content_hash=content_hash
    )


def catalog(*records: FileRecord) -> FileCatalog:
    return FileCatalog.from_records(records)


class TestDiff:

    def test_new_file_is_added(self):
        result = diff(catalog(record("a.txt")), catalog())

        assert result.added_or_modified == ("a.txt",)
        assert result.unchanged == ()
        assert result.deleted_in_source == ()

    def test_identical_hashes_are_unchanged(self):
        result = diff(
            catalog(record("a.txt", content_hash="H")),
            catalog(record("a.txt", content_hash="H"))
        )

        assert result.unchanged == ("a.txt",)
        assert result.added_or_modified == ()

    def test_hash_equality_wins_over_size_and_mtime(self):
        result = diff(
            catalog(record("a.txt", size=100, modified_at=T2, content_hash="H")),
            catalog(record("a.txt", size=999, modified_at=T1, content_hash="H"))
        )

        assert result.unchanged == ("a.txt",)

    def test_hash_difference_wins_over_size_and_mtime(self):
        result = diff(
            catalog(record("a.txt", content_hash="H1")),
            catalog(record("a.txt", content_hash="H2"))
        )

        assert result.added_or_modified == ("a.txt",)

    def test_older_target_is_modified(self):
        result = diff(catalog(record("a.txt", modified_at=T2)), catalog(record("a.txt", modified_at=T1)))
        assert result.added_or_modified == ("a.txt",)

    def test_newer_target_with_same_size_is_unchanged(self):
        result = diff(catalog(record("a.txt", modified_at=T1)), catalog(record("a.txt", modified_at=T2)))
        assert result.unchanged == ("a.txt",)

    def test_size_difference_is_modified(self):
        result = diff(catalog(record("a.txt", size=10)), catalog(record("a.txt", size=20, modified_at=T2)))
        assert result.added_or_modified == ("a.txt",)

    def test_one_sided_hash_falls_back_to_size_and_mtime(self):
        result = diff(catalog(record("a.txt", content_hash="H")), catalog(record("a.txt")))
        assert result.unchanged == ("a.txt",)

    def test_target_only_paths_are_deleted_in_source(self):
        result = diff(catalog(record("a.txt")), catalog(record("a.txt"), record("old/b.txt")))
        assert result.deleted_in_source == ("old/b.txt",)

    def test_partition_covers_every_path_exactly_once(self):
        source = catalog(
            record("new.txt"),
            record("same.txt"),
            record("changed.txt", size=50),
            record("hashed.txt", content_hash="X"),
        )
        target = catalog(
            record("same.txt"),
            record("changed.txt", size=60),
            record("hashed.txt", size=1, content_hash="X"),
            record("gone.txt"),
        )

        result = diff(source, target)
        sets = [set(result.added_or_modified), set(result.unchanged), set(result.deleted_in_source)]

        assert set().union(*sets) == set(source.paths()) | set(target.paths())
        assert sum(len(s) for s in sets) == len(set(source.paths()) | set(target.paths()))
        assert result.all_paths() == tuple(sorted(set(source.paths()) | set(target.paths())))

    def test_diff_is_deterministic_regardless_of_order(self):
        records: List[FileRecord] = [record(f"f{i}.txt", size=i) for i in range(10)]
        target_records = [record(f"f{i}.txt", size=i if i % 2 else i + 1) for i in range(5, 15)]

        first = diff(FileCatalog.from_records(records), FileCatalog.from_records(target_records))
        second = diff(
            FileCatalog.from_records(reversed(records)),
            FileCatalog.from_records(reversed(target_records))
        )

        assert first == second
        assert diff(catalog(*records), catalog(*target_records)) == first

    def test_nothing_to_send_is_empty(self):
        assert diff(catalog(record("a.txt")), catalog(record("a.txt"))).is_empty
        assert not diff(catalog(record("a.txt")), catalog()).is_empty


class TestFileCatalog:

    def test_records_are_sorted_and_deduplicated(self):
        cat = catalog(record("b.txt"), record("a.txt", size=1), record("a.txt", size=2))

        assert cat.paths() == ("a.txt", "b.txt")
        assert cat.get("a.txt").size_bytes == 2
        assert len(cat) == 2
        assert "b.txt" in cat
        assert "c.txt" not in cat
        assert cat.total_bytes == 102

    def test_subset_and_selection(self):
        cat = catalog(record("a.txt"), record("b.txt"), record("c.txt"))

        assert cat.subset(["c.txt", "a.txt"]).paths() == ("a.txt", "c.txt")

        selected = cat.with_selection(["b.txt"])
        assert [r.selected for r in selected] == [False, True, False]
        assert all(r.selected for r in cat)

    def test_build_lists_nested_files(self, tmp_path):
        (tmp_path / "a.txt").write_bytes(b"hello")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.bin").write_bytes(b"\x00" * 10)

        cat = FileCatalog.build(str(tmp_path), LocalFileSystem())

        assert cat.paths() == ("a.txt", "sub/b.bin")
        assert cat.get("a.txt").size_bytes == 5
        assert cat.get("a.txt").content_type == "text/plain"
        assert cat.get("a.txt").content_hash == ""
        assert cat.get("sub/b.bin").absolute_path == str(tmp_path / "sub" / "b.bin")
        assert cat.warnings == 0

    def test_build_truncates_mtime_to_milliseconds(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"x")
        os.utime(path, ns=(1_700_000_000_123_456_789, 1_700_000_000_123_456_789))

        modified_at = FileCatalog.build(str(tmp_path), LocalFileSystem()).get("a.txt").modified_at

        assert modified_at.tzinfo is not None
        assert modified_at.microsecond % 1000 == 0
        assert from_millis(to_millis(modified_at)) == modified_at

    def test_build_computes_hashes(self, tmp_path):
        (tmp_path / "a.txt").write_bytes(b"hello")

        cat = FileCatalog.build(str(tmp_path), LocalFileSystem(), compute_hashes=True)

        assert cat.get("a.txt").content_hash == hashlib.md5(b"hello").hexdigest()

    def test_build_skips_excluded_paths(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "config").write_text("x")
        (tmp_path / "keep.txt").write_text("x")
        (tmp_path / "notes.txt.swp").write_text("x")

        cat = FileCatalog.build(str(tmp_path), LocalFileSystem(), exclude_patterns=DEFAULT_EXCLUDE_PATTERNS)

        assert cat.paths() == ("keep.txt",)

    def test_build_missing_folder_raises_not_found(self, tmp_path):
        with pytest.raises(CatalogNotFoundError) as exc_info:
            FileCatalog.build(str(tmp_path / "missing"), LocalFileSystem())

        assert exc_info.value.code == "not_found"

    def test_build_counts_unreadable_entries_as_warnings(self):

        class PartlyReadable(BaseFileSystem):
            def exists(self, folder_path):
                return True

            def list_files_recursive(self, folder_path):
                return [
                    RawFileEntry("ok.txt", "/f/ok.txt", size_bytes=3, modified_at=T1, content_type="text/plain"),
                    RawFileEntry("locked", "/f/locked", error="Permission denied"),
                ]

            def compute_hash(self, absolute_path):
                return ""

            def read_file(self, absolute_path):
                return b""

            def copy_into(self, dest_folder, relative_path, data, modified_at=None):
                return ""

            def delete(self, absolute_path):
                return True

        cat = FileCatalog.build("/f", PartlyReadable())

        assert cat.paths() == ("ok.txt",)
        assert cat.warnings == 1


class TestFileRecord:

    def test_same_content_prefers_hashes(self):
        assert record("a", size=1, content_hash="H").same_content(record("a", size=2, content_hash="H"))
        assert not record("a", content_hash="H1").same_content(record("a", content_hash="H2"))
        assert record("a").same_content(record("a"))
        assert not record("a").same_content(record("a", modified_at=T2))

    def test_wire_dict_uses_epoch_millis(self):
        data = record("a.txt", modified_at=T1).to_dict()

        assert data["modified_at"] == to_millis(T1) == 1704110400000
        assert data["transfer_status"] == "pending"
        assert FileRecord.from_dict(data) == record("a.txt", modified_at=T1)

    def test_from_dict_defaults(self):
        restored = FileRecord.from_dict({"relative_path": "a", "size_bytes": 1, "modified_at": 0})

        assert restored.content_type == "application/octet-stream"
        assert restored.transfer_status is TransferStatus.PENDING
        assert restored.selected is True

    def test_naive_datetimes_are_taken_as_utc(self):
        naive = datetime(2024, 1, 1, 12, 0, 0)
        assert to_millis(naive) == to_millis(T1)
        assert truncate_to_millis(T1 + timedelta(microseconds=1500)) == T1 + timedelta(milliseconds=1)
