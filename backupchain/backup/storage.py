"""
Destination tree handling.

Each backup lives in its own directory under the destination root, named
from its creation time so a lexical sort is chronological:

    {dest_root}/backup_YYYYMMDD_HHMMSS[_NN]/
    {dest_root}/.backupchain.lock          (present while a writer runs)

A backup is written into ``<name>.incomplete`` first and renamed to its
final name only once everything has been written. A directory that still
carries the suffix is the remains of a failed or interrupted run.
"""

import logging
import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from backupchain.errors import BackupError


logger = logging.getLogger(__name__)

METADATA_FILE = 'backup_metadata.json'
SNAPSHOT_FILE = 'file_state.json'
RESERVED_FILES = (METADATA_FILE, SNAPSHOT_FILE)
LOCK_FILE = '.backupchain.lock'

DIR_PREFIX = 'backup_'
DIR_TIME_FORMAT = '%Y%m%d_%H%M%S'
INCOMPLETE_SUFFIX = '.incomplete'
MAX_SAME_SECOND = 99

_DIR_PATTERN = re.compile(r'^backup_(\d{8}_\d{6})(?:_(\d{2}))?$')


class StorageError(BackupError):
    """Raised when an operation on the destination tree fails."""
    pass


def is_backup_name(name: str) -> bool:
    return _DIR_PATTERN.match(name) is not None


class LocalStorage:
    """
    Handler for backup directories under a local destination root.
    """

    def __init__(self, base_path: str, create: bool = True):
        """
        Initialize local storage handler.

        Args:
            base_path: Destination root directory
            create: Create the root if it does not exist

        Raises:
            StorageError: If the root cannot be created
        """
        self.base_path = Path(base_path)

        if create:
            try:
                self.base_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to create destination directory {base_path}: {e}")

    def new_backup_name(self, when: Optional[datetime] = None) -> str:
        """
        Name for a backup created at ``when``.

        A two-digit suffix is added when a backup (finished or in progress)
        already uses the same second.
        """
        base = DIR_PREFIX + (when or datetime.now()).strftime(DIR_TIME_FORMAT)

        for counter in range(MAX_SAME_SECOND + 1):
            name = base if counter == 0 else f"{base}_{counter:02d}"
            if not self._name_taken(name):
                return name

        raise StorageError(f"Too many backups created within the same second: {base}")

    def _name_taken(self, name: str) -> bool:
        return (self.base_path / name).exists() or (self.base_path / (name + INCOMPLETE_SUFFIX)).exists()

    def begin(self, when: Optional[datetime] = None) -> Tuple[str, str]:
        """
        Create the in-progress directory for a new backup.

        Returns:
            (final_path, work_path)

        Raises:
            StorageError: If the directory cannot be created
        """
        name = self.new_backup_name(when)
        final_path = self.base_path / name
        work_path = self.base_path / (name + INCOMPLETE_SUFFIX)

        try:
            work_path.mkdir(parents=False, exist_ok=False)
        except OSError as e:
            raise StorageError(f"Failed to create backup directory {work_path}: {e}")

        logger.debug(f"Started backup directory {work_path}")
        return str(final_path), str(work_path)

    def finalize(self, work_path: str, final_path: str):
        """
        Atomically rename a completed in-progress directory to its final name.

        Raises:
            StorageError: If the rename fails
        """
        try:
            os.rename(work_path, final_path)
        except OSError as e:
            raise StorageError(f"Failed to finalize backup directory {work_path}: {e}")

        logger.debug(f"Finalized backup directory {final_path}")

    def list_backups(self) -> List[str]:
        """
        List finished backups, oldest first.

        A finished backup is a correctly named directory holding a metadata
        document.

        Returns:
            Absolute paths of the backup directories
        """
        if not self.base_path.is_dir():
            return []

        try:
            names = sorted(
                entry.name for entry in os.scandir(self.base_path)
                if entry.is_dir() and is_backup_name(entry.name)
                and os.path.isfile(os.path.join(entry.path, METADATA_FILE))
            )
        except OSError as e:
            raise StorageError(f"Failed to list backups in {self.base_path}: {e}")

        return [str(self.base_path / name) for name in names]

    def list_incomplete(self) -> List[str]:
        """Directories left behind by failed or interrupted backups."""
        if not self.base_path.is_dir():
            return []

        try:
            names = sorted(
                entry.name for entry in os.scandir(self.base_path)
                if entry.is_dir() and entry.name.endswith(INCOMPLETE_SUFFIX)
                and is_backup_name(entry.name[:-len(INCOMPLETE_SUFFIX)])
            )
        except OSError as e:
            raise StorageError(f"Failed to list backups in {self.base_path}: {e}")

        return [str(self.base_path / name) for name in names]

    def latest_backup(self) -> Optional[str]:
        backups = self.list_backups()
        return backups[-1] if backups else None

    @staticmethod
    def backup_size(backup_path: str) -> int:
        """Total size in bytes of every file under a backup directory."""
        total = 0
        for dirpath, _, filenames in os.walk(backup_path):
            for name in filenames:
                try:
                    total += os.path.getsize(os.path.join(dirpath, name))
                except OSError as e:
                    logger.warning(f"Cannot stat {os.path.join(dirpath, name)}: {e}")
        return total

    @staticmethod
    def backup_timestamp(backup_path: str) -> datetime:
        """
        Creation time of a backup, taken from its directory name.

        Falls back to the directory's modification time for names that do
        not follow the naming scheme.
        """
        name = os.path.basename(os.path.normpath(backup_path))
        if name.endswith(INCOMPLETE_SUFFIX):
            name = name[:-len(INCOMPLETE_SUFFIX)]

        match = _DIR_PATTERN.match(name)
        if match:
            return datetime.strptime(match.group(1), DIR_TIME_FORMAT)

        return datetime.fromtimestamp(int(os.path.getmtime(backup_path)))

    def delete(self, backup_path: str):
        """
        Remove a backup directory and everything in it.

        Raises:
            StorageError: If deletion fails
        """
        try:
            if os.path.exists(backup_path):
                shutil.rmtree(backup_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {backup_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete backup {backup_path}: {e}")

        logger.info(f"Deleted backup directory {backup_path}")

    def get_full_path(self, name: str) -> str:
        return str(self.base_path / name)
