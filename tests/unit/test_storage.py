"""
Unit tests for the destination tree (backupchain/backup/storage.py).

Tests backup directory naming, the in-progress/finalize cycle, listing and deletion.
"""

import os
from datetime import datetime
from unittest.mock import patch

import pytest

from backupchain.backup.storage import (
    LocalStorage,
    StorageError,
    is_backup_name,
    METADATA_FILE,
    INCOMPLETE_SUFFIX
)


WHEN = datetime(2024, 1, 15, 10, 30, 45)


def _finished(storage, when=WHEN):
    final_path, work_path = storage.begin(when)
    with open(os.path.join(work_path, METADATA_FILE), 'w') as f:
        f.write('{"version": "1.0", "backups": []}')
    storage.finalize(work_path, final_path)
    return final_path


class TestNaming:
    """Test backup directory names."""

    def test_new_backup_name(self, tmp_path):
        """Test the name encodes the creation time."""
        storage = LocalStorage(str(tmp_path))

        assert storage.new_backup_name(WHEN) == 'backup_20240115_103045'

    def test_same_second_gets_counter(self, tmp_path):
        """Test names created within the same second get a two-digit suffix."""
        storage = LocalStorage(str(tmp_path))
        _finished(storage)
        storage.begin(WHEN)

        assert storage.new_backup_name(WHEN) == 'backup_20240115_103045_02'

    def test_too_many_in_one_second(self, tmp_path):
        """Test exhausting the counter raises StorageError."""
        storage = LocalStorage(str(tmp_path))

        with patch.object(LocalStorage, '_name_taken', return_value=True):
            with pytest.raises(StorageError, match="same second"):
                storage.new_backup_name(WHEN)

    @pytest.mark.parametrize("name,expected", [
        ('backup_20240115_103045', True),
        ('backup_20240115_103045_07', True),
        ('backup_20240115_103045.incomplete', False),
        ('backup_2024_01', False),
        ('other', False),
    ])
    def test_is_backup_name(self, name, expected):
        """Test the directory name pattern."""
        assert is_backup_name(name) is expected


class TestLifecycle:
    """Test begin, finalize and listing."""

    def test_root_is_created(self, tmp_path):
        """Test the destination root is created on demand."""
        root = tmp_path / 'a' / 'b'

        LocalStorage(str(root))

        assert root.is_dir()

    def test_root_not_created(self, tmp_path):
        """Test create=False leaves a missing root alone."""
        storage = LocalStorage(str(tmp_path / 'missing'), create=False)

        assert not (tmp_path / 'missing').exists()
        assert storage.list_backups() == []
        assert storage.list_incomplete() == []

    def test_begin_creates_incomplete_directory(self, tmp_path):
        """Test work happens in a suffixed directory."""
        storage = LocalStorage(str(tmp_path))

        final_path, work_path = storage.begin(WHEN)

        assert work_path == final_path + INCOMPLETE_SUFFIX
        assert os.path.isdir(work_path)
        assert not os.path.exists(final_path)

    def test_finalize_renames(self, tmp_path):
        """Test finalize moves the work directory to its final name."""
        storage = LocalStorage(str(tmp_path))

        final_path = _finished(storage)

        assert os.path.isdir(final_path)
        assert not os.path.exists(final_path + INCOMPLETE_SUFFIX)

    def test_finalize_missing_work_dir(self, tmp_path):
        """Test a failed rename raises StorageError."""
        storage = LocalStorage(str(tmp_path))

        with pytest.raises(StorageError):
            storage.finalize(str(tmp_path / 'nope'), str(tmp_path / 'final'))

    def test_list_backups_only_finished(self, tmp_path):
        """Test listing skips incomplete, metadata-less and foreign directories."""
        storage = LocalStorage(str(tmp_path))
        first = _finished(storage, datetime(2024, 1, 1, 0, 0, 0))
        second = _finished(storage, datetime(2024, 1, 2, 0, 0, 0))
        storage.begin(datetime(2024, 1, 3, 0, 0, 0))
        (tmp_path / 'backup_20240104_000000').mkdir()
        (tmp_path / 'unrelated').mkdir()

        assert storage.list_backups() == [first, second]
        assert storage.latest_backup() == second
        assert [os.path.basename(p) for p in storage.list_incomplete()] == [
            'backup_20240103_000000.incomplete'
        ]

    def test_latest_backup_empty(self, tmp_path):
        """Test latest_backup with no backups."""
        assert LocalStorage(str(tmp_path)).latest_backup() is None


class TestBackupInfo:
    """Test size, timestamp and deletion helpers."""

    def test_backup_size(self, tmp_path):
        """Test the size is the sum of every file under the directory."""
        backup = tmp_path / 'backup_20240115_103045'
        (backup / 'sub').mkdir(parents=True)
        (backup / 'a').write_bytes(b'x' * 10)
        (backup / 'sub' / 'b').write_bytes(b'y' * 5)

        assert LocalStorage.backup_size(str(backup)) == 15

    def test_backup_timestamp_from_name(self, tmp_path):
        """Test the timestamp is parsed from the name, suffix or not."""
        assert LocalStorage.backup_timestamp(str(tmp_path / 'backup_20240115_103045_03')) == WHEN
        assert LocalStorage.backup_timestamp(str(tmp_path / 'backup_20240115_103045.incomplete')) == WHEN

    def test_backup_timestamp_fallback_to_mtime(self, tmp_path):
        """Test unrecognised names fall back to the modification time."""
        other = tmp_path / 'manual_copy'
        other.mkdir()
        os.utime(other, (1705314645, 1705314645))

        assert LocalStorage.backup_timestamp(str(other)) == datetime.fromtimestamp(1705314645)

    def test_delete(self, tmp_path):
        """Test delete removes the directory tree."""
        storage = LocalStorage(str(tmp_path))
        final_path = _finished(storage)

        storage.delete(final_path)

        assert not os.path.exists(final_path)

    def test_delete_missing_is_noop(self, tmp_path):
        """Test deleting a path that does not exist does nothing."""
        LocalStorage(str(tmp_path)).delete(str(tmp_path / 'missing'))

    @patch('backupchain.backup.storage.shutil.rmtree', side_effect=PermissionError('denied'))
    def test_delete_permission_error(self, mock_rmtree, tmp_path):
        """Test permission failures surface as StorageError."""
        storage = LocalStorage(str(tmp_path))
        final_path = _finished(storage)

        with pytest.raises(StorageError, match="Permission denied"):
            storage.delete(final_path)

    def test_get_full_path(self, tmp_path):
        """Test names resolve under the root."""
        storage = LocalStorage(str(tmp_path))

        assert storage.get_full_path('backup_x') == str(tmp_path / 'backup_x')
