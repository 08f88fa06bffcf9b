"""
Unit tests for change detection (backupchain/backup/tracker.py).

Tests scanning, snapshot persistence and the new/modified/deleted/unchanged diff.
"""

import json
import os
from datetime import datetime

import pytest

from backupchain.backup.tracker import ChangeTracker, ChangeSet, ScanError, records_match
from backupchain.errors import PersistenceError
from backupchain.models import FileRecord


def _bump_mtime(path, seconds=10):
    stat = os.stat(path)
    os.utime(path, (stat.st_atime, int(stat.st_mtime) + seconds))


class TestScan:
    """Test ChangeTracker.scan."""

    def test_scan_records_files_and_directories(self, source_tree):
        """Test every file and directory is recorded under a relative POSIX key."""
        tracker = ChangeTracker()

        count = tracker.scan(str(source_tree))

        assert count == 3
        assert set(tracker.current) == {'a.txt', 'sub', 'sub/b.txt'}
        assert tracker.current['sub'].is_directory is True
        assert tracker.current['sub'].size == 0
        assert tracker.current['sub'].checksum == ''

    def test_scan_file_record_fields(self, source_tree):
        """Test a file record carries size, whole-second mtime and SHA-256."""
        tracker = ChangeTracker()
        tracker.scan(str(source_tree))

        record = tracker.get_file_record('a.txt')

        assert record.size == 10
        assert record.last_modified.microsecond == 0
        assert len(record.checksum) == 64
        assert tracker.total_size == 30
        assert tracker.total_files == 3

    def test_scan_missing_root(self, tmp_path):
        """Test scanning a nonexistent root raises ScanError."""
        tracker = ChangeTracker()

        with pytest.raises(ScanError, match="does not exist"):
            tracker.scan(str(tmp_path / 'nope'))

    def test_scan_root_is_file(self, tmp_path):
        """Test scanning a regular file raises ScanError."""
        path = tmp_path / 'file.txt'
        path.write_text('x')

        with pytest.raises(ScanError, match="not a directory"):
            ChangeTracker().scan(str(path))

    def test_scan_skips_symlinks(self, source_tree):
        """Test symbolic links are not recorded."""
        os.symlink(str(source_tree / 'a.txt'), str(source_tree / 'link.txt'))
        tracker = ChangeTracker()

        tracker.scan(str(source_tree))

        assert 'link.txt' not in tracker.current

    def test_scan_empty_directory(self, tmp_path):
        """Test an empty root scans to zero entries."""
        root = tmp_path / 'empty'
        root.mkdir()

        assert ChangeTracker().scan(str(root)) == 0

    def test_rescan_replaces_current(self, source_tree):
        """Test a second scan replaces the current generation."""
        tracker = ChangeTracker()
        tracker.scan(str(source_tree))
        os.remove(source_tree / 'a.txt')

        tracker.scan(str(source_tree))

        assert 'a.txt' not in tracker.current


class TestSnapshot:
    """Test snapshot save and load."""

    def test_save_and_load_snapshot(self, source_tree, tmp_path):
        """Test a saved snapshot loads back as the previous generation."""
        snapshot = str(tmp_path / 'file_state.json')
        tracker = ChangeTracker()
        tracker.scan(str(source_tree))
        tracker.save_snapshot(snapshot)

        other = ChangeTracker()
        other.load_previous(snapshot)

        assert other.previous == tracker.current

    def test_snapshot_document_layout(self, source_tree, tmp_path):
        """Test the snapshot document fields."""
        snapshot = tmp_path / 'file_state.json'
        tracker = ChangeTracker()
        tracker.scan(str(source_tree))
        tracker.save_snapshot(str(snapshot))

        document = json.loads(snapshot.read_text())

        assert document['version'] == '1.0'
        assert 'timestamp' in document
        item = next(f for f in document['files'] if f['path'] == 'a.txt')
        assert set(item) == {'path', 'size', 'isDirectory', 'checksum', 'lastModified'}

    def test_load_missing_snapshot(self, tmp_path):
        """Test a missing snapshot leaves the previous generation empty."""
        tracker = ChangeTracker()

        tracker.load_previous(str(tmp_path / 'missing.json'))

        assert tracker.previous == {}

    def test_load_malformed_snapshot(self, tmp_path):
        """Test invalid JSON raises PersistenceError."""
        snapshot = tmp_path / 'file_state.json'
        snapshot.write_text('{not json')

        with pytest.raises(PersistenceError):
            ChangeTracker().load_previous(str(snapshot))

    def test_load_drops_bad_entries(self, tmp_path):
        """Test entries missing required fields are dropped."""
        snapshot = tmp_path / 'file_state.json'
        snapshot.write_text(json.dumps({'version': '1.0', 'files': [
            {'path': 'ok.txt', 'size': 1, 'isDirectory': False, 'checksum': 'aa',
             'lastModified': '2024-01-15 10:00:00'},
            {'path': 'broken.txt'},
        ]}))
        tracker = ChangeTracker()

        tracker.load_previous(str(snapshot))

        assert list(tracker.previous) == ['ok.txt']


class TestDiff:
    """Test change classification between generations."""

    def _tracker_with_previous(self, source_tree, tmp_path):
        snapshot = str(tmp_path / 'snapshot.json')
        tracker = ChangeTracker()
        tracker.scan(str(source_tree))
        tracker.save_snapshot(snapshot)
        tracker.load_previous(snapshot)
        return tracker

    def test_first_scan_everything_new(self, source_tree):
        """Test with no previous generation every path is new."""
        tracker = ChangeTracker()
        tracker.scan(str(source_tree))

        changes = tracker.diff()

        assert changes.new == ['a.txt', 'sub', 'sub/b.txt']
        assert changes.modified == []
        assert changes.deleted == []

    def test_no_changes(self, source_tree, tmp_path):
        """Test an untouched tree reports everything unchanged."""
        tracker = self._tracker_with_previous(source_tree, tmp_path)
        tracker.scan(str(source_tree))

        changes = tracker.diff()

        assert changes.has_changes is False
        assert changes.unchanged == ['a.txt', 'sub', 'sub/b.txt']
        assert tracker.changed_files() == []

    def test_modified_new_and_deleted(self, source_tree, tmp_path):
        """Test each kind of change is classified."""
        tracker = self._tracker_with_previous(source_tree, tmp_path)
        (source_tree / 'sub' / 'b.txt').write_bytes(b'changed content')
        (source_tree / 'c.txt').write_bytes(b'new')
        os.remove(source_tree / 'a.txt')

        tracker.scan(str(source_tree))

        assert tracker.modified_files() == ['sub/b.txt']
        assert tracker.new_files() == ['c.txt']
        assert tracker.deleted_files() == ['a.txt']
        assert tracker.changed_files() == ['c.txt', 'sub/b.txt']
        assert tracker.changed_count == 2

    def test_same_size_same_mtime_different_content(self, source_tree, tmp_path):
        """Test content changes are caught by checksum when size and mtime match."""
        path = source_tree / 'a.txt'
        stat = os.stat(path)
        tracker = self._tracker_with_previous(source_tree, tmp_path)

        path.write_bytes(b'9876543210')
        os.utime(path, (stat.st_atime, stat.st_mtime))
        tracker.scan(str(source_tree))

        assert tracker.has_changed('a.txt') is True

    def test_touched_file_is_modified(self, source_tree, tmp_path):
        """Test a newer mtime alone marks the file modified."""
        tracker = self._tracker_with_previous(source_tree, tmp_path)
        _bump_mtime(source_tree / 'a.txt')

        tracker.scan(str(source_tree))

        assert tracker.modified_files() == ['a.txt']

    def test_has_changed_deleted_and_unknown(self, source_tree, tmp_path):
        """Test has_changed for deleted and never-seen paths."""
        tracker = self._tracker_with_previous(source_tree, tmp_path)
        os.remove(source_tree / 'a.txt')
        tracker.scan(str(source_tree))

        assert tracker.has_changed('a.txt') is True
        assert tracker.has_changed('never.txt') is False

    def test_update_and_remove_record(self, source_tree):
        """Test manual edits of the current generation."""
        tracker = ChangeTracker()
        tracker.scan(str(source_tree))
        record = FileRecord(path='x.txt', size=1, last_modified=datetime(2024, 1, 1), checksum='aa')

        tracker.update_record(record)
        tracker.remove_record('a.txt')

        assert tracker.get_file_record('x.txt') == record
        assert tracker.get_file_record('a.txt') is None

    def test_clear(self, source_tree):
        """Test clear empties both generations."""
        tracker = ChangeTracker()
        tracker.scan(str(source_tree))

        tracker.clear()

        assert tracker.current == {}
        assert tracker.previous == {}


class TestRecordsMatch:
    """Test the record comparison rule."""

    def test_directories_ignore_checksum(self):
        """Test directories compare on size and time only."""
        when = datetime(2024, 1, 15, 10, 0, 0)
        a = FileRecord(path='d', size=0, last_modified=when, checksum='x', is_directory=True)
        b = FileRecord(path='d', size=0, last_modified=when, checksum='y', is_directory=True)

        assert records_match(a, b) is True

    def test_size_difference(self):
        """Test differing sizes never match."""
        when = datetime(2024, 1, 15, 10, 0, 0)
        a = FileRecord(path='f', size=1, last_modified=when, checksum='x')
        b = FileRecord(path='f', size=2, last_modified=when, checksum='x')

        assert records_match(a, b) is False

    def test_changeset_changed_is_sorted(self):
        """Test ChangeSet.changed merges and sorts new and modified."""
        changes = ChangeSet(new=['z.txt'], modified=['a.txt'])

        assert changes.changed == ['a.txt', 'z.txt']
        assert changes.has_changes is True
