"""
Shared pytest fixtures for backupchain tests.

This module provides fixtures for:
- Source trees to back up and destination roots
- Executors with an isolated lock registry
- Encryption keys and key files
- Mock fixtures for the APScheduler background scheduler
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from backupchain.backup import BackupExecutor, DestinationLocks
from backupchain.backup.executor import BackupOptions
from backupchain.models import BackupRecord, FileEntry


TEST_KEY = '00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff'


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a small source tree.

    Creates:
    - a.txt (10 bytes)
    - sub/b.txt (20 bytes)
    """
    source = tmp_path / 'source'
    (source / 'sub').mkdir(parents=True)
    (source / 'a.txt').write_bytes(b'0123456789')
    (source / 'sub' / 'b.txt').write_bytes(b'abcdefghijklmnopqrst')
    return source


@pytest.fixture
def dest_root(tmp_path):
    """Empty destination root for backups."""
    dest = tmp_path / 'backups'
    dest.mkdir()
    return dest


@pytest.fixture
def restore_dir(tmp_path):
    """Restore target that does not exist yet."""
    return tmp_path / 'restored'


@pytest.fixture
def executor():
    """Executor with its own lock registry so tests never share destination locks."""
    return BackupExecutor(locks=DestinationLocks())


@pytest.fixture
def options(source_tree, dest_root):
    """Compressed, unencrypted backup options for source_tree -> dest_root."""
    return BackupOptions(source_path=str(source_tree), dest_path=str(dest_root))


@pytest.fixture
def encrypted_options(source_tree, dest_root):
    """Compressed and encrypted backup options using TEST_KEY."""
    return BackupOptions(
        source_path=str(source_tree),
        dest_path=str(dest_root),
        encrypt=True,
        encryption_key=TEST_KEY,
    )


@pytest.fixture
def key_file(tmp_path):
    """Raw 32-byte key file holding TEST_KEY."""
    path = tmp_path / 'backup.key'
    path.write_bytes(bytes.fromhex(TEST_KEY))
    return path


@pytest.fixture
def make_record():
    """
    Factory for BackupRecord instances.

    Usage: make_record('b1', 'full', datetime(...), parent_id='', files=[...])
    """
    def _make(backup_id, backup_type='full', timestamp=None, parent_id='', files=None,
              source_path='/data'):
        return BackupRecord(
            id=backup_id,
            backup_type=backup_type,
            timestamp=timestamp or datetime(2024, 1, 15, 12, 0, 0),
            source_path=source_path,
            parent_id=parent_id,
            files=files if files is not None else [
                FileEntry(
                    relative_path='a.txt',
                    checksum='ab' * 32,
                    size=10,
                    stored_size=18,
                    last_modified=datetime(2024, 1, 15, 11, 0, 0),
                    compressed=True,
                )
            ],
            total_size=10,
            stored_size=18,
        )
    return _make


@pytest.fixture(scope='function')
def mock_background_scheduler():
    """
    Mock APScheduler for testing scheduler start/stop.
    """
    with patch('backupchain.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance
        scheduler_instance.running = False

        def _start():
            scheduler_instance.running = True

        def _shutdown(wait=True):
            scheduler_instance.running = False

        scheduler_instance.start.side_effect = _start
        scheduler_instance.shutdown.side_effect = _shutdown

        yield mock_sched
