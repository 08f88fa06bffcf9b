"""
Data model for backupchain.

- FileRecord: one tracked path in a change-tracker generation
- FileEntry: one stored file inside a backup record
- BackupRecord: one completed backup (full or incremental)
- ScheduleEntry: one named schedule owned by the scheduler
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional

from backupchain.utils.formatting import format_timestamp, parse_timestamp


BACKUP_TYPE_FULL = 'full'
BACKUP_TYPE_INCREMENTAL = 'incremental'
VALID_BACKUP_TYPES = (BACKUP_TYPE_FULL, BACKUP_TYPE_INCREMENTAL)


@dataclass
class FileRecord:
    """State of one path as seen by a change-tracker scan.

    ``path`` is the tracker-relative key (POSIX separators), so two scans of
    the same tree at different mount points compare equal.
    """

    path: str
    size: int
    last_modified: datetime
    checksum: str = ''
    is_directory: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'size': self.size,
            'isDirectory': self.is_directory,
            'checksum': self.checksum,
            'lastModified': format_timestamp(self.last_modified),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileRecord':
        return cls(
            path=data['path'],
            size=int(data['size']),
            last_modified=parse_timestamp(data['lastModified']),
            checksum=data.get('checksum', ''),
            is_directory=bool(data['isDirectory']),
        )


@dataclass
class FileEntry:
    """A file stored inside one backup.

    ``checksum`` and ``size`` describe the original content; ``stored_size``
    is the size on disk after compression/encryption.
    """

    relative_path: str
    checksum: str
    size: int
    stored_size: int
    last_modified: datetime
    compressed: bool = False
    encrypted: bool = False

    def is_valid(self) -> bool:
        return bool(self.relative_path) and bool(self.checksum)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'relativePath': self.relative_path,
            'checksum': self.checksum,
            'size': self.size,
            'lastModified': format_timestamp(self.last_modified),
            'compressed': self.compressed,
            'encrypted': self.encrypted,
            'storedSize': self.stored_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileEntry':
        return cls(
            relative_path=data['relativePath'],
            checksum=data['checksum'],
            size=int(data['size']),
            stored_size=int(data['storedSize']),
            last_modified=parse_timestamp(data['lastModified']),
            compressed=bool(data['compressed']),
            encrypted=bool(data['encrypted']),
        )


@dataclass
class BackupRecord:
    """Metadata for one completed backup operation."""

    id: str
    backup_type: str
    timestamp: datetime
    source_path: str
    parent_id: str = ''
    files: List[FileEntry] = field(default_factory=list)
    total_size: int = 0
    stored_size: int = 0
    encrypted: bool = False
    encryption_method: str = ''
    compression_method: str = 'none'
    compression_level: int = 6

    @property
    def is_full(self) -> bool:
        return self.backup_type == BACKUP_TYPE_FULL

    @property
    def is_incremental(self) -> bool:
        return self.backup_type == BACKUP_TYPE_INCREMENTAL

    def find_file(self, relative_path: str) -> Optional[FileEntry]:
        for entry in self.files:
            if entry.relative_path == relative_path:
                return entry
        return None

    def copy(self) -> 'BackupRecord':
        """Return a copy whose file list can be mutated independently."""
        return replace(self, files=[replace(entry) for entry in self.files])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backupId': self.id,
            'backupType': self.backup_type,
            'timestamp': format_timestamp(self.timestamp),
            'sourcePath': self.source_path,
            'parentBackupId': self.parent_id,
            'totalSize': self.total_size,
            'storedSize': self.stored_size,
            'encrypted': self.encrypted,
            'encryptionMethod': self.encryption_method,
            'compressionMethod': self.compression_method,
            'compressionLevel': self.compression_level,
            'files': [entry.to_dict() for entry in self.files],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        """
        Build a record from its document form.

        Raises:
            KeyError, TypeError, ValueError: If a required field is missing or malformed
        """
        return cls(
            id=data['backupId'],
            backup_type=data['backupType'],
            timestamp=parse_timestamp(data['timestamp']),
            source_path=data['sourcePath'],
            parent_id=data.get('parentBackupId') or '',
            files=[FileEntry.from_dict(item) for item in data['files']],
            total_size=int(data['totalSize']),
            stored_size=int(data['storedSize']),
            encrypted=bool(data['encrypted']),
            encryption_method=data.get('encryptionMethod', ''),
            compression_method=data.get('compressionMethod', ''),
            compression_level=int(data.get('compressionLevel', 6)),
        )


class ScheduleKind(IntEnum):
    """Schedule kinds; the integer value is the persisted ordinal."""

    ONCE = 0
    HOURLY = 1
    DAILY = 2
    WEEKLY = 3
    MONTHLY = 4
    CUSTOM = 5


@dataclass
class ScheduleEntry:
    """A named schedule. ``next_run`` is None once a one-shot entry has fired."""

    name: str
    kind: ScheduleKind
    interval: int
    next_run: Optional[datetime]
    backup_name: str = ''
    enabled: bool = True

    def is_due(self, now: datetime) -> bool:
        return self.enabled and self.next_run is not None and self.next_run <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': int(self.kind),
            'interval': self.interval,
            'nextRun': format_timestamp(self.next_run) if self.next_run else '',
            'backupName': self.backup_name,
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleEntry':
        next_run = data.get('nextRun') or ''
        return cls(
            name=data['name'],
            kind=ScheduleKind(int(data['type'])),
            interval=int(data['interval']),
            next_run=parse_timestamp(next_run) if next_run else None,
            backup_name=data.get('backupName', ''),
            enabled=bool(data['enabled']),
        )
