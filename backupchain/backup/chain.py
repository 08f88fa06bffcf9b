"""
Backup chain store.

In-memory registry of BackupRecords keyed by backup id. Incremental records
point at the backup they were diffed against through ``parent_id``; following
those links always ends at a full backup (the chain root).

The store is an explicitly owned object: the executor holds one per
operation and persists it next to each backup as JSON.
"""

import hashlib
import json
import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from backupchain.errors import PersistenceError, ValidationError
from backupchain.models import BackupRecord, FileEntry, VALID_BACKUP_TYPES


logger = logging.getLogger(__name__)

STORE_VERSION = '1.0'


class BackupChainStore:
    """Registry of backup records with chain traversal, queries and JSON persistence."""

    def __init__(self):
        self._records: Dict[str, BackupRecord] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, backup_id: str) -> bool:
        return backup_id in self._records

    @staticmethod
    def validate(record: BackupRecord):
        """
        Check the fields a record needs before it can be stored.

        Parent references are not resolved here; see verify_integrity().

        Raises:
            ValidationError: If id, type or source path is missing, or the type is unknown
        """
        if not record.id:
            raise ValidationError("Backup id is required")
        if not record.backup_type:
            raise ValidationError(f"Backup type is required for {record.id}")
        if record.backup_type not in VALID_BACKUP_TYPES:
            raise ValidationError(
                f"Invalid backup type for {record.id}: {record.backup_type}. "
                f"Valid options: {list(VALID_BACKUP_TYPES)}"
            )
        if not record.source_path:
            raise ValidationError(f"Source path is required for {record.id}")

    def create(self, record: BackupRecord) -> bool:
        """Add a new record. Returns False if the id exists or the record is invalid."""
        try:
            self.validate(record)
        except ValidationError as e:
            logger.warning(f"Rejected backup record: {e}")
            return False

        with self._lock:
            if record.id in self._records:
                logger.warning(f"Backup record already exists: {record.id}")
                return False
            self._records[record.id] = record.copy()

        logger.debug(f"Created {record.backup_type} backup record {record.id}")
        return True

    def update(self, record: BackupRecord) -> bool:
        """Replace an existing record. Returns False if it is unknown or invalid."""
        try:
            self.validate(record)
        except ValidationError as e:
            logger.warning(f"Rejected backup record update: {e}")
            return False

        with self._lock:
            if record.id not in self._records:
                return False
            self._records[record.id] = record.copy()
        return True

    def delete(self, backup_id: str) -> bool:
        with self._lock:
            return self._records.pop(backup_id, None) is not None

    def get(self, backup_id: str) -> Optional[BackupRecord]:
        """Return a copy of the record, or None if it does not exist."""
        with self._lock:
            record = self._records.get(backup_id)
            return record.copy() if record else None

    def clear(self):
        with self._lock:
            self._records = {}

    def get_chain(self, backup_id: str) -> List[BackupRecord]:
        """
        Walk parent links from backup_id back to the chain root.

        Returns the records ordered from backup_id to the root. The walk stops
        at a missing parent, and before revisiting a record if the links form
        a cycle.
        """
        chain = []
        seen = set()

        with self._lock:
            current = self._records.get(backup_id)
            while current is not None:
                if current.id in seen:
                    logger.warning(f"Cycle detected in backup chain of {backup_id} at {current.id}")
                    break
                seen.add(current.id)
                chain.append(current.copy())
                if not current.parent_id:
                    break
                current = self._records.get(current.parent_id)

        return chain

    def get_full_backup_id(self, backup_id: str) -> str:
        """Id of the full backup at the root of backup_id's chain, or '' if there is none."""
        full_id = ''
        for record in self.get_chain(backup_id):
            if record.is_full:
                full_id = record.id
        return full_id

    def get_incrementals_of(self, full_id: str) -> List[BackupRecord]:
        """All incremental records whose chain root is full_id, oldest first."""
        with self._lock:
            candidates = [r.id for r in self._records.values() if r.is_incremental]

        incrementals = [
            self.get(backup_id) for backup_id in candidates
            if self.get_full_backup_id(backup_id) == full_id
        ]
        with self._lock:
            return self._in_order(r for r in incrementals if r is not None)

    def _in_order(self, records) -> List[BackupRecord]:
        # Records sharing a timestamp keep the order they were added in, which
        # is creation order in-process and directory-name order when loaded
        position = {backup_id: index for index, backup_id in enumerate(self._records)}
        return sorted(records, key=lambda r: (r.timestamp, position.get(r.id, len(position))))

    def verify_integrity(self, backup_id: str) -> bool:
        """
        Check a stored record for structural consistency.

        Required fields must be present, the type must be valid, an
        incremental's parent must exist and every file entry must carry a
        path and checksum.
        """
        record = self.get(backup_id)
        if record is None:
            logger.warning(f"Integrity check failed: unknown backup {backup_id}")
            return False

        try:
            self.validate(record)
        except ValidationError as e:
            logger.warning(f"Integrity check failed: {e}")
            return False

        if record.is_incremental:
            if not record.parent_id or record.parent_id not in self:
                logger.warning(
                    f"Integrity check failed: parent '{record.parent_id}' of {backup_id} not found"
                )
                return False

        for entry in record.files:
            if not entry.is_valid():
                logger.warning(
                    f"Integrity check failed: invalid file entry '{entry.relative_path}' in {backup_id}"
                )
                return False

        return True

    def compute_record_checksum(self, backup_id: str) -> str:
        """
        SHA-256 fingerprint over a record's identity fields and file entries.

        Covers id, type and source path, then each entry's path, checksum and
        size in stored order. File content is not read.
        """
        record = self.get(backup_id)
        if record is None:
            return ''

        digest = hashlib.sha256()
        digest.update(record.id.encode('utf-8'))
        digest.update(record.backup_type.encode('utf-8'))
        digest.update(record.source_path.encode('utf-8'))
        for entry in record.files:
            digest.update(entry.relative_path.encode('utf-8'))
            digest.update(entry.checksum.encode('utf-8'))
            digest.update(str(entry.size).encode('utf-8'))
        return digest.hexdigest()

    def validate_file_checksums(self, backup_id: str) -> bool:
        """True if every file entry of the record has a checksum."""
        record = self.get(backup_id)
        if record is None:
            return False
        return all(entry.checksum for entry in record.files)

    def add_file_entry(self, backup_id: str, entry: FileEntry) -> bool:
        """Append an entry, replacing any entry with the same relative path."""
        with self._lock:
            record = self._records.get(backup_id)
            if record is None:
                return False
            record.files = [e for e in record.files if e.relative_path != entry.relative_path]
            record.files.append(entry)
            return True

    def remove_file_entry(self, backup_id: str, relative_path: str) -> bool:
        with self._lock:
            record = self._records.get(backup_id)
            if record is None:
                return False
            remaining = [e for e in record.files if e.relative_path != relative_path]
            removed = len(remaining) != len(record.files)
            record.files = remaining
            return removed

    def get_file_entries(self, backup_id: str) -> List[FileEntry]:
        record = self.get(backup_id)
        return record.files if record else []

    def get_file_entry(self, backup_id: str, relative_path: str) -> Optional[FileEntry]:
        record = self.get(backup_id)
        return record.find_file(relative_path) if record else None

    def total_size(self, backup_id: str) -> int:
        record = self.get(backup_id)
        return record.total_size if record else 0

    def file_count(self, backup_id: str) -> int:
        record = self.get(backup_id)
        return len(record.files) if record else 0

    def compression_ratio(self, backup_id: str) -> float:
        """Stored size over original size; 0.0 for an unknown or empty backup."""
        record = self.get(backup_id)
        if record is None or record.total_size == 0:
            return 0.0
        return record.stored_size / record.total_size

    def list_ids(self) -> List[str]:
        """All backup ids, oldest first."""
        with self._lock:
            records = self._in_order(self._records.values())
            return [r.id for r in records]

    def find_containing(self, relative_path: str) -> List[str]:
        """Ids of records holding a file entry for relative_path, oldest first."""
        with self._lock:
            records = self._in_order(self._records.values())
            return [r.id for r in records if r.find_file(relative_path) is not None]

    def find_in_range(self, start: datetime, end: datetime) -> List[str]:
        """Ids of records with start <= timestamp < end, oldest first."""
        with self._lock:
            records = self._in_order(self._records.values())
            return [r.id for r in records if start <= r.timestamp < end]

    def latest(self) -> Optional[BackupRecord]:
        ids = self.list_ids()
        return self.get(ids[-1]) if ids else None

    def to_document(self, ids: Optional[List[str]] = None,
                    extra: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
        """
        Build the JSON document for all records, or only for ``ids``.

        ``extra`` maps a backup id to additional fields merged into that
        record's document (for example its recorded checksum).
        """
        extra = extra or {}
        with self._lock:
            selected = self.list_ids() if ids is None else [i for i in ids if i in self._records]
            backups = []
            for backup_id in selected:
                item = self._records[backup_id].to_dict()
                item.update(extra.get(backup_id, {}))
                backups.append(item)

        return {'version': STORE_VERSION, 'backups': backups}

    def save(self, path: str, ids: Optional[List[str]] = None,
             extra: Optional[Dict[str, Dict[str, Any]]] = None):
        """
        Write the store (or a subset of it) to a JSON document.

        Raises:
            PersistenceError: If the document cannot be written
        """
        document = self.to_document(ids, extra)
        try:
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
        except OSError as e:
            raise PersistenceError(f"Failed to write backup metadata {path}: {e}")

        logger.debug(f"Saved {len(document['backups'])} backup records to {path}")

    def load(self, path: str, merge: bool = False) -> int:
        """
        Read records from a JSON document.

        A missing file leaves the store empty (or unchanged when merging).
        Records that fail to parse are logged and dropped; the rest load.

        Args:
            path: Document to read
            merge: Keep existing records and add the loaded ones on top

        Returns:
            Number of records loaded from the document

        Raises:
            PersistenceError: If the file exists but is not a valid document
        """
        document = self.read_document(path)

        with self._lock:
            if not merge:
                self._records = {}

            if document is None:
                return 0

            loaded = 0
            for item in document.get('backups', []):
                try:
                    record = BackupRecord.from_dict(item)
                    self.validate(record)
                except (KeyError, TypeError, ValueError, ValidationError) as e:
                    logger.warning(f"Dropping malformed backup record in {path}: {e}")
                    continue
                self._records[record.id] = record
                loaded += 1

        logger.debug(f"Loaded {loaded} backup records from {path}")
        return loaded

    @staticmethod
    def read_document(path: str) -> Optional[Dict[str, Any]]:
        """Parse a store document; None if the file does not exist."""
        if not os.path.exists(path):
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read backup metadata {path}: {e}")

        if not isinstance(document, dict) or not isinstance(document.get('backups', []), list):
            raise PersistenceError(f"Backup metadata {path} is not a backup store document")
        return document

    def prune_orphans(self) -> List[str]:
        """
        Remove incremental records whose parent no longer exists. Returns removed ids.

        Removal repeats until no orphan is left, so descendants of a removed
        orphan go too.
        """
        orphans = []
        with self._lock:
            while True:
                found = [
                    r.id for r in self._records.values()
                    if r.is_incremental and r.parent_id not in self._records
                ]
                if not found:
                    break
                for backup_id in found:
                    del self._records[backup_id]
                orphans.extend(found)

        if orphans:
            logger.info(f"Pruned {len(orphans)} orphaned incremental records")
        return orphans

    def prune_older_than(self, cutoff: datetime) -> List[str]:
        """
        Remove every record with a timestamp before cutoff. Returns removed ids.

        Dependent incrementals newer than cutoff are left in place; use
        prune_orphans() afterwards to drop them.
        """
        with self._lock:
            expired = [r.id for r in self._records.values() if r.timestamp < cutoff]
            for backup_id in expired:
                del self._records[backup_id]

        if expired:
            logger.info(f"Pruned {len(expired)} backup records older than {cutoff}")
        return expired
