"""
Change detection for incremental backups.

The tracker holds two generations of a directory snapshot: ``previous``
(loaded from the snapshot saved with the last backup) and ``current``
(produced by a fresh scan). Paths are keyed relative to the scanned root.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from backupchain.errors import PersistenceError, ValidationError
from backupchain.models import FileRecord
from backupchain.utils.formatting import format_timestamp
from backupchain.utils.hashing import sha256_file


logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = '1.0'


class ScanError(ValidationError):
    """Raised when the scan root cannot be read."""
    pass


@dataclass
class ChangeSet:
    """Classification of paths between the previous and current generation."""

    new: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    @property
    def changed(self) -> List[str]:
        return sorted(self.new + self.modified)

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.modified or self.deleted)


def records_match(current: FileRecord, previous: FileRecord) -> bool:
    """
    Compare two records of the same path.

    Size and modification time are checked first; for regular files the
    checksum decides. Directories compare on size and time only.
    """
    if current.size != previous.size:
        return False

    if current.last_modified != previous.last_modified:
        return False

    if current.is_directory:
        return True

    return current.checksum == previous.checksum


class ChangeTracker:
    """Scans a directory tree and diffs it against a prior snapshot."""

    def __init__(self):
        self.root: Optional[Path] = None
        self.current: Dict[str, FileRecord] = {}
        self.previous: Dict[str, FileRecord] = {}
        self.skipped: List[str] = []

    def scan(self, root_path: str) -> int:
        """
        Replace the current generation with a fresh recursive walk.

        Files that cannot be read are logged and skipped.

        Args:
            root_path: Directory to scan

        Returns:
            Number of entries recorded

        Raises:
            ScanError: If the root does not exist, is not a directory, or cannot be listed
        """
        root = Path(root_path).resolve()

        if not root.exists():
            raise ScanError(f"Scan root does not exist: {root_path}")
        if not root.is_dir():
            raise ScanError(f"Scan root is not a directory: {root_path}")
        if not os.access(root, os.R_OK | os.X_OK):
            raise ScanError(f"No permission to read directory: {root_path}")

        def _on_walk_error(error: OSError):
            if Path(error.filename or '') == root:
                raise ScanError(f"Failed to list scan root {root_path}: {error}")
            logger.warning(f"Skipping unreadable directory '{error.filename}': {error}")
            self.skipped.append(str(error.filename))

        self.root = root
        self.current = {}
        self.skipped = []

        for dirpath, dirnames, filenames in os.walk(root, onerror=_on_walk_error):
            dirnames.sort()
            for name in dirnames + sorted(filenames):
                full_path = Path(dirpath) / name
                try:
                    record = self._create_record(root, full_path)
                except OSError as e:
                    logger.warning(f"Skipping file '{full_path}': {e}")
                    self.skipped.append(str(full_path))
                    continue
                if record is not None:
                    self.current[record.path] = record

        logger.info(
            f"Scanned {root}: {len(self.current)} entries"
            + (f", {len(self.skipped)} skipped" if self.skipped else "")
        )
        return len(self.current)

    def _create_record(self, root: Path, full_path: Path) -> Optional[FileRecord]:
        key = full_path.relative_to(root).as_posix()
        # lstat so symlinks are never followed out of the tree
        stat = full_path.lstat()
        modified = datetime.fromtimestamp(int(stat.st_mtime))

        if full_path.is_symlink():
            logger.debug(f"Skipping symbolic link '{full_path}'")
            return None

        if full_path.is_dir():
            return FileRecord(path=key, size=0, last_modified=modified, checksum='', is_directory=True)

        if not full_path.is_file():
            return None

        return FileRecord(
            path=key,
            size=stat.st_size,
            last_modified=modified,
            checksum=sha256_file(str(full_path)),
            is_directory=False,
        )

    def load_previous(self, snapshot_path: str):
        """
        Populate the previous generation from a snapshot document.

        A missing snapshot leaves the previous generation empty. Entries that
        fail to parse are logged and dropped.

        Raises:
            PersistenceError: If the document exists but is not valid JSON
        """
        self.previous = {}

        if not os.path.exists(snapshot_path):
            logger.info(f"No previous snapshot at {snapshot_path}, treating every path as new")
            return

        try:
            with open(snapshot_path, 'r', encoding='utf-8') as f:
                document = json.load(f)
            items = document['files']
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Failed to read snapshot {snapshot_path}: {e}")

        for item in items:
            try:
                record = FileRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed snapshot entry in {snapshot_path}: {e}")
                continue
            self.previous[record.path] = record

        logger.debug(f"Loaded {len(self.previous)} entries from snapshot {snapshot_path}")

    def save_snapshot(self, snapshot_path: str):
        """
        Write the current generation as a snapshot document.

        Raises:
            PersistenceError: If the document cannot be written
        """
        document = {
            'version': SNAPSHOT_VERSION,
            'timestamp': format_timestamp(datetime.now()),
            'files': [self.current[key].to_dict() for key in sorted(self.current)],
        }

        try:
            with open(snapshot_path, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
        except OSError as e:
            raise PersistenceError(f"Failed to write snapshot {snapshot_path}: {e}")

    def diff(self) -> ChangeSet:
        """Classify every path of both generations."""
        changes = ChangeSet()

        for key in sorted(self.current):
            previous = self.previous.get(key)
            if previous is None:
                changes.new.append(key)
            elif records_match(self.current[key], previous):
                changes.unchanged.append(key)
            else:
                changes.modified.append(key)

        changes.deleted = sorted(key for key in self.previous if key not in self.current)
        return changes

    def new_files(self) -> List[str]:
        return self.diff().new

    def modified_files(self) -> List[str]:
        return self.diff().modified

    def deleted_files(self) -> List[str]:
        return self.diff().deleted

    def changed_files(self) -> List[str]:
        """New and modified paths."""
        return self.diff().changed

    def unchanged_files(self) -> List[str]:
        return self.diff().unchanged

    def has_changed(self, path: str) -> bool:
        current = self.current.get(path)
        previous = self.previous.get(path)

        if current is None:
            return previous is not None
        if previous is None:
            return True
        return not records_match(current, previous)

    def get_file_record(self, path: str) -> Optional[FileRecord]:
        return self.current.get(path)

    def update_record(self, record: FileRecord):
        self.current[record.path] = record

    def remove_record(self, path: str):
        self.current.pop(path, None)

    def clear(self):
        self.current = {}
        self.previous = {}
        self.skipped = []

    @property
    def total_files(self) -> int:
        return len(self.current)

    @property
    def changed_count(self) -> int:
        return len(self.changed_files())

    @property
    def total_size(self) -> int:
        """Combined size of regular files in the current generation."""
        return sum(record.size for record in self.current.values() if not record.is_directory)
