"""
Unit tests for data models (backupchain/models.py).

Tests document conversion of records and schedule entries.
"""

from datetime import datetime, timedelta

import pytest

from backupchain.models import BackupRecord, FileEntry, FileRecord, ScheduleEntry, ScheduleKind


class TestFileRecord:
    """Test FileRecord."""

    def test_to_dict(self):
        """Test the snapshot field names."""
        record = FileRecord(path='sub/b.txt', size=20, last_modified=datetime(2024, 1, 15, 9, 30, 0),
                            checksum='ab' * 32)

        assert record.to_dict() == {
            'path': 'sub/b.txt',
            'size': 20,
            'isDirectory': False,
            'checksum': 'ab' * 32,
            'lastModified': '2024-01-15 09:30:00',
        }

    def test_from_dict_round_trip(self):
        """Test a record survives conversion to and from its document form."""
        record = FileRecord(path='sub', size=0, last_modified=datetime(2024, 1, 15, 9, 30, 0),
                            is_directory=True)

        assert FileRecord.from_dict(record.to_dict()) == record

    def test_from_dict_missing_field(self):
        """Test a missing required field raises KeyError."""
        with pytest.raises(KeyError):
            FileRecord.from_dict({'path': 'x', 'size': 1})


class TestBackupRecord:
    """Test BackupRecord."""

    def test_type_properties(self, make_record):
        """Test is_full / is_incremental."""
        assert make_record('f', 'full').is_full is True
        assert make_record('i', 'incremental', parent_id='f').is_incremental is True

    def test_find_file(self, make_record):
        """Test lookup of a file entry by path."""
        record = make_record('b1')

        assert record.find_file('a.txt').size == 10
        assert record.find_file('nope') is None

    def test_copy_is_independent(self, make_record):
        """Test copies do not share the file list or entries."""
        record = make_record('b1')

        clone = record.copy()
        clone.files[0].size = 999
        clone.files.append(FileEntry('x', 'cc', 1, 1, datetime(2024, 1, 1)))

        assert record.files[0].size == 10
        assert len(record.files) == 1

    def test_document_round_trip(self, make_record):
        """Test a record survives conversion to and from its document form."""
        record = make_record('i1', 'incremental', parent_id='f1')
        record.encrypted = True
        record.encryption_method = 'AES-256-GCM'
        record.compression_method = 'zlib'

        document = record.to_dict()

        assert document['parentBackupId'] == 'f1'
        assert document['files'][0]['storedSize'] == 18
        assert BackupRecord.from_dict(document) == record

    def test_from_dict_null_parent(self, make_record):
        """Test a null parent id reads as empty."""
        document = make_record('f1').to_dict()
        document['parentBackupId'] = None

        assert BackupRecord.from_dict(document).parent_id == ''

    def test_from_dict_bad_timestamp(self, make_record):
        """Test an unparseable timestamp raises ValueError."""
        document = make_record('f1').to_dict()
        document['timestamp'] = '15/01/2024'

        with pytest.raises(ValueError):
            BackupRecord.from_dict(document)

    def test_file_entry_validity(self):
        """Test entries need a path and a checksum."""
        assert FileEntry('a', 'cc', 1, 1, datetime(2024, 1, 1)).is_valid() is True
        assert FileEntry('', 'cc', 1, 1, datetime(2024, 1, 1)).is_valid() is False
        assert FileEntry('a', '', 1, 1, datetime(2024, 1, 1)).is_valid() is False


class TestScheduleEntry:
    """Test ScheduleEntry."""

    def test_is_due(self):
        """Test an entry is due at or after its next run when enabled."""
        when = datetime(2024, 1, 15, 10, 0, 0)
        entry = ScheduleEntry(name='job', kind=ScheduleKind.DAILY, interval=86400, next_run=when)

        assert entry.is_due(when) is True
        assert entry.is_due(when - timedelta(seconds=1)) is False

        entry.enabled = False
        assert entry.is_due(when) is False

    def test_spent_entry_never_due(self):
        """Test an entry without a next run is never due."""
        entry = ScheduleEntry(name='job', kind=ScheduleKind.ONCE, interval=0, next_run=None, enabled=True)

        assert entry.is_due(datetime(2030, 1, 1)) is False

    def test_document_round_trip(self):
        """Test an entry survives conversion to and from its document form."""
        entry = ScheduleEntry(name='job', kind=ScheduleKind.CUSTOM, interval=90,
                              next_run=datetime(2024, 1, 15, 10, 0, 0), backup_name='docs', enabled=False)

        document = entry.to_dict()

        assert document['type'] == 5
        assert ScheduleEntry.from_dict(document) == entry

    def test_empty_next_run(self):
        """Test an empty nextRun reads as None."""
        entry = ScheduleEntry(name='job', kind=ScheduleKind.ONCE, interval=0, next_run=None, enabled=False)

        document = entry.to_dict()

        assert document['nextRun'] == ''
        assert ScheduleEntry.from_dict(document).next_run is None
