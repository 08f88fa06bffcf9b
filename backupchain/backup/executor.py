"""
Backup executor - orchestrates full and incremental backups, restore and verify.

Backup workflow:
1. Validate source, destination and key material
2. Load the previous snapshot (incremental only) and scan the source tree
3. Create an in-progress backup directory
4. Transform-copy every target file (compress and/or encrypt)
5. Persist backup metadata and the new snapshot
6. Rename the directory to its final name

Every operation returns a BackupOutcome (status success/skipped/failed)
instead of raising; the outcome carries the error message, its category and
a timestamped log of the run.
"""

import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from backupchain.errors import BackupError, PersistenceError, TransformError, ValidationError
from backupchain.models import BACKUP_TYPE_FULL, BACKUP_TYPE_INCREMENTAL, BackupRecord, FileEntry
from backupchain.utils.formatting import format_bytes, format_duration, truncate_to_seconds
from backupchain.utils.hashing import sha256_file
from .chain import BackupChainStore
from .compression import DEFAULT_COMPRESSION, validate_level
from .storage import LocalStorage, StorageError, LOCK_FILE, METADATA_FILE, SNAPSHOT_FILE, RESERVED_FILES
from .tracker import ChangeTracker
from .transform import TransformPipeline


logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_SKIPPED = 'skipped'
STATUS_FAILED = 'failed'

COMPRESSION_METHOD = 'zlib'
NO_COMPRESSION_METHOD = 'none'
RECORD_CHECKSUM_FIELD = 'recordChecksum'
MISSING_STORED_FILE = 'stored file is missing'

ProgressCallback = Callable[[str, int], None]


class DestinationBusyError(BackupError):
    """Raised when another backup is already writing to the same destination."""
    pass


def classify_error(error: Exception) -> str:
    """Map an exception to the outcome's error category."""
    if isinstance(error, DestinationBusyError):
        return 'busy'
    if isinstance(error, (ValidationError, ValueError)):
        return 'validation'
    if isinstance(error, TransformError):
        return 'transform'
    if isinstance(error, PersistenceError):
        return 'persistence'
    if isinstance(error, (OSError, StorageError)):
        return 'io'
    return 'internal'


def process_alive(pid: int) -> bool:
    """Whether a process with this id is running."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class DestinationLocks:
    """
    Per-destination mutual exclusion for backup writers.

    Threads of one process exclude each other through an in-memory lock;
    separate processes (a manual run next to the scheduler) through a lock
    file in the destination root holding the writer's pid. A lock file whose
    process no longer exists is stale and is taken over.

    Acquisition never blocks: a second writer for the same destination gets
    DestinationBusyError.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @staticmethod
    def _key(path: str) -> str:
        return os.path.realpath(os.path.abspath(path))

    def _lock_for(self, path: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(self._key(path), threading.Lock())

    @contextmanager
    def hold(self, path: str):
        lock = self._lock_for(path)
        if not lock.acquire(blocking=False):
            raise DestinationBusyError(f"Another backup is already running for {path}")
        try:
            lock_path = self._acquire_file(path)
            try:
                yield
            finally:
                self._release_file(lock_path)
        finally:
            lock.release()

    def is_locked(self, path: str) -> bool:
        if self._lock_for(path).locked():
            return True
        return os.path.exists(os.path.join(self._key(path), LOCK_FILE))

    def _acquire_file(self, path: str) -> str:
        root = self._key(path)
        lock_path = os.path.join(root, LOCK_FILE)
        try:
            os.makedirs(root, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create destination directory {path}: {e}")

        for _ in range(2):
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._clear_stale(lock_path):
                    raise DestinationBusyError(
                        f"Another backup is already running for {path} (lock file {lock_path})"
                    )
                continue
            except OSError as e:
                raise StorageError(f"Failed to create lock file {lock_path}: {e}")

            with os.fdopen(fd, 'w') as f:
                f.write(str(os.getpid()))
            return lock_path

        raise DestinationBusyError(f"Another backup is already running for {path} (lock file {lock_path})")

    @staticmethod
    def _clear_stale(lock_path: str) -> bool:
        """Remove a lock file left by a process that no longer runs."""
        try:
            with open(lock_path, 'r') as f:
                pid = int(f.read().strip())
        except FileNotFoundError:
            return True
        except (OSError, ValueError):
            # Unreadable or still being written by its owner
            return False

        if pid == os.getpid() or process_alive(pid):
            return False

        logger.warning(f"Removing stale lock file {lock_path} left by process {pid}")
        try:
            os.remove(lock_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove stale lock file {lock_path}: {e}")
        return True

    @staticmethod
    def _release_file(lock_path: str):
        try:
            os.remove(lock_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove lock file {lock_path}: {e}")


# Shared by every executor in the process so manual and scheduled runs exclude each other
destination_locks = DestinationLocks()


@dataclass
class BackupOptions:
    """Settings for one backup run."""

    source_path: str
    dest_path: str
    compress: bool = True
    encrypt: bool = False
    encryption_key: Optional[str] = None
    key_file: Optional[str] = None
    compression_level: int = DEFAULT_COMPRESSION

    def to_dict(self) -> Dict[str, Any]:
        """Settings as a document item. The raw encryption key is never included."""
        return {
            'sourcePath': self.source_path,
            'destPath': self.dest_path,
            'compress': self.compress,
            'encrypt': self.encrypt,
            'keyFile': self.key_file or '',
            'compressionLevel': self.compression_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupOptions':
        return cls(
            source_path=data['sourcePath'],
            dest_path=data['destPath'],
            compress=bool(data.get('compress', True)),
            encrypt=bool(data.get('encrypt', False)),
            key_file=data.get('keyFile') or None,
            compression_level=int(data.get('compressionLevel', DEFAULT_COMPRESSION)),
        )


@dataclass
class BackupOutcome:
    """Result of one executor operation."""

    operation: str
    status: str = ''
    backup_id: str = ''
    backup_path: str = ''
    backup_type: str = ''
    parent_id: str = ''
    files_processed: int = 0
    total_size: int = 0
    stored_size: int = 0
    content_verified: bool = False
    error_message: str = ''
    error_kind: str = ''
    failed_files: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (STATUS_SUCCESS, STATUS_SKIPPED)

    @property
    def duration(self) -> float:
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()


def generate_backup_id() -> str:
    return uuid.uuid4().hex


class BackupExecutor:
    """
    Orchestrates backup, restore and verification against a destination tree.

    The chain store, transform pipeline, progress callback and lock registry
    are injectable; defaults are created when omitted.
    """

    def __init__(
        self,
        store: Optional[BackupChainStore] = None,
        pipeline: Optional[TransformPipeline] = None,
        progress_callback: Optional[ProgressCallback] = None,
        locks: Optional[DestinationLocks] = None
    ):
        self.store = store if store is not None else BackupChainStore()
        self.pipeline = pipeline or TransformPipeline()
        self.progress_callback = progress_callback
        self.locks = locks or destination_locks
        self.logs: List[str] = []
        self._last_percent = 0

    def set_progress_callback(self, callback: Optional[ProgressCallback]):
        self.progress_callback = callback

    # Backup

    def create_full(self, options: BackupOptions) -> BackupOutcome:
        """Back up every file of the source tree into a new backup directory."""
        return self._run('full backup', lambda outcome: self._backup(options, outcome, incremental=False),
                         lock_path=options.dest_path)

    def create_incremental(self, options: BackupOptions) -> BackupOutcome:
        """
        Back up files that are new or modified since the latest backup in the destination.

        With no finished backup in the destination a full backup is made
        instead. With nothing changed no directory is created and the outcome
        status is ``skipped``.
        """
        return self._run('incremental backup', lambda outcome: self._backup(options, outcome, incremental=True),
                         lock_path=options.dest_path)

    def _backup(self, options: BackupOptions, outcome: BackupOutcome, incremental: bool):
        self._progress('Validating', 0)
        source_root = self._validate_source(options.source_path)
        if not options.dest_path:
            raise ValidationError("Destination path is required")
        validate_level(options.compression_level)
        if options.encrypt:
            self._prepare_key(options.encryption_key, options.key_file, required=True)

        storage = LocalStorage(options.dest_path)
        tracker = ChangeTracker()
        parent_id = ''

        if incremental:
            latest = storage.latest_backup()
            if latest is None:
                self._log("No previous backup in destination, creating a full backup instead")
                incremental = False
            else:
                parent = self.read_record(latest)[0]
                parent_id = parent.id
                self.store.load(os.path.join(latest, METADATA_FILE), merge=True)
                tracker.load_previous(os.path.join(latest, SNAPSHOT_FILE))
                self._log(f"Comparing against backup {parent_id} ({os.path.basename(latest)})")

        self._progress('Scanning source', 10)
        tracker.scan(str(source_root))
        for skipped in tracker.skipped:
            self._log(f"Warning: skipped unreadable path {skipped}", logging.WARNING)

        if incremental:
            changes = tracker.diff()
            targets = changes.changed
            self._log(
                f"Changes: {len(changes.new)} new, {len(changes.modified)} modified, "
                f"{len(changes.deleted)} deleted"
            )
        else:
            targets = sorted(tracker.current)

        files = [p for p in targets if not tracker.current[p].is_directory]
        directories = [p for p in targets if tracker.current[p].is_directory]
        self._progress('Scan complete', 20)

        # A modified directory alone only reflects entries added or removed
        # inside it; additions show up as new paths, removals as deletions
        new_directories = [p for p in directories if p not in tracker.previous]
        if incremental and not files and not new_directories:
            self._log("No changes detected since the last backup, nothing to do")
            outcome.status = STATUS_SKIPPED
            outcome.backup_type = BACKUP_TYPE_INCREMENTAL
            outcome.parent_id = parent_id
            self._progress('Complete', 100)
            return

        now = truncate_to_seconds(datetime.now())
        final_path, work_path = storage.begin(now)
        self._progress('Preparing destination', 30)
        self._log(f"Writing backup to {work_path}")

        record = BackupRecord(
            id=generate_backup_id(),
            backup_type=BACKUP_TYPE_INCREMENTAL if incremental else BACKUP_TYPE_FULL,
            timestamp=now,
            source_path=str(source_root),
            parent_id=parent_id,
            encrypted=options.encrypt,
            encryption_method=self.pipeline.encryptor.method if options.encrypt else '',
            compression_method=COMPRESSION_METHOD if options.compress else NO_COMPRESSION_METHOD,
            compression_level=options.compression_level,
        )
        outcome.backup_id = record.id
        outcome.backup_type = record.backup_type
        outcome.parent_id = parent_id

        for relative in directories:
            os.makedirs(os.path.join(work_path, relative), exist_ok=True)

        for index, relative in enumerate(files, start=1):
            if relative in RESERVED_FILES:
                self._log(f"Warning: skipping '{relative}', the name is reserved for backup metadata",
                          logging.WARNING)
                outcome.failed_files.append(relative)
                continue

            source_record = tracker.current[relative]
            stored_path = os.path.join(work_path, relative)
            try:
                os.makedirs(os.path.dirname(stored_path), exist_ok=True)
                stored_size = self.pipeline.apply_file(
                    str(source_root / relative),
                    stored_path,
                    compress=options.compress,
                    encrypt=options.encrypt,
                    level=options.compression_level,
                )
            except Exception:
                outcome.failed_files.append(relative)
                self._log(f"Failed to back up {relative}; partial backup left at {work_path}",
                          logging.ERROR)
                raise

            record.files.append(FileEntry(
                relative_path=relative,
                checksum=source_record.checksum,
                size=source_record.size,
                stored_size=stored_size,
                last_modified=source_record.last_modified,
                compressed=options.compress,
                encrypted=options.encrypt,
            ))
            record.total_size += source_record.size
            record.stored_size += stored_size
            self._progress(f'Backing up {relative}', 30 + 60 * index // len(files))

        self._progress('Saving metadata', 95)
        if not self.store.create(record):
            raise ValidationError(f"Backup record {record.id} was rejected by the chain store")

        try:
            checksum = self.store.compute_record_checksum(record.id)
            self.store.save(
                os.path.join(work_path, METADATA_FILE),
                ids=[record.id],
                extra={record.id: {RECORD_CHECKSUM_FIELD: checksum}},
            )
            tracker.save_snapshot(os.path.join(work_path, SNAPSHOT_FILE))
            storage.finalize(work_path, final_path)
        except Exception:
            self.store.delete(record.id)
            self._log(f"Partial backup left at {work_path}", logging.ERROR)
            raise

        outcome.status = STATUS_SUCCESS
        outcome.backup_path = final_path
        outcome.files_processed = len(record.files)
        outcome.total_size = record.total_size
        outcome.stored_size = record.stored_size
        self._log(
            f"Backed up {len(record.files)} files ({format_bytes(record.total_size)} original, "
            f"{format_bytes(record.stored_size)} stored) to {final_path}"
        )
        self._progress('Complete', 100)

    # Restore

    def restore_all(self, backup_path: str, target_path: str,
                    encryption_key: Optional[str] = None, key_file: Optional[str] = None) -> BackupOutcome:
        """Restore every file of one backup into target_path."""
        def body(outcome: BackupOutcome):
            self._progress('Loading metadata', 0)
            record = self._load_for_restore(backup_path, encryption_key, key_file)
            self._progress('Creating restore directory', 10)
            self._restore_record(backup_path, record, target_path, outcome, 20, 90)
            self._progress('Restore complete', 100)
            outcome.status = STATUS_SUCCESS

        return self._run('restore', body)

    def restore_one(self, backup_path: str, relative_path: str, target_path: str,
                    encryption_key: Optional[str] = None, key_file: Optional[str] = None) -> BackupOutcome:
        """Restore a single file of a backup to target_path/relative_path."""
        def body(outcome: BackupOutcome):
            self._progress('Loading metadata', 0)
            record = self._load_for_restore(backup_path, encryption_key, key_file)
            entry = record.find_file(relative_path)
            if entry is None:
                raise ValidationError(f"File '{relative_path}' is not part of backup {record.id}")

            self._progress(f'Restoring {relative_path}', 50)
            self._restore_entry(backup_path, entry, target_path, outcome)
            outcome.files_processed = 1
            outcome.total_size = entry.size
            self._progress('Restore complete', 100)
            outcome.status = STATUS_SUCCESS

        return self._run('restore file', body)

    def restore_chain(self, backup_path: str, target_path: str,
                      encryption_key: Optional[str] = None, key_file: Optional[str] = None) -> BackupOutcome:
        """
        Restore the state captured by a backup, following its chain.

        The full backup at the chain root is restored first, then each
        incremental in order up to backup_path; later versions overwrite
        earlier ones. Paths missing from the snapshot saved with backup_path
        were deleted before it was taken and are not restored.
        """
        def body(outcome: BackupOutcome):
            self._progress('Loading metadata', 0)
            record = self._load_for_restore(backup_path, encryption_key, key_file)
            live_paths = self._snapshot_paths(backup_path)
            dest_root = os.path.dirname(os.path.abspath(backup_path))
            locations = self.load_destination(dest_root)
            self.store.load(os.path.join(backup_path, METADATA_FILE), merge=True)
            locations[record.id] = os.path.abspath(backup_path)

            chain = list(reversed(self.store.get_chain(record.id)))
            if not chain or not chain[0].is_full:
                raise ValidationError(f"Backup chain of {record.id} does not reach a full backup")
            missing = [r.id for r in chain if r.id not in locations]
            if missing:
                raise ValidationError(f"Backup directories not found for: {', '.join(missing)}")

            self._log(f"Restoring chain of {len(chain)} backups")
            self._progress('Creating restore directory', 10)
            step = 80 / len(chain)
            for index, link in enumerate(chain):
                if link.encrypted and not self.pipeline.encryptor.has_key:
                    raise ValidationError(f"Backup {link.id} is encrypted; an encryption key is required")
                start = 20 + int(step * index)
                self._restore_record(locations[link.id], link, target_path, outcome,
                                     start, 20 + int(step * (index + 1)), include=live_paths)

            self._progress('Restore complete', 100)
            outcome.status = STATUS_SUCCESS

        return self._run('restore chain', body)

    def _load_for_restore(self, backup_path: str, encryption_key: Optional[str],
                          key_file: Optional[str]) -> BackupRecord:
        record = self.read_record(backup_path)[0]
        self._prepare_key(encryption_key, key_file, required=False)
        if record.encrypted and not self.pipeline.encryptor.has_key:
            raise ValidationError(f"Backup {record.id} is encrypted; an encryption key is required")
        return record

    def _snapshot_paths(self, backup_path: str) -> Optional[Set[str]]:
        """Paths that existed in the source when a backup was taken, or None without a snapshot."""
        snapshot_path = os.path.join(backup_path, SNAPSHOT_FILE)
        if not os.path.isfile(snapshot_path):
            self._log(f"No snapshot in {backup_path}, files deleted since earlier backups may reappear",
                      logging.WARNING)
            return None

        tracker = ChangeTracker()
        tracker.load_previous(snapshot_path)
        return set(tracker.previous)

    def _restore_record(self, backup_path: str, record: BackupRecord, target_path: str,
                        outcome: BackupOutcome, start: int, end: int,
                        include: Optional[Set[str]] = None):
        os.makedirs(target_path, exist_ok=True)

        # Recreate the directory tree, including empty directories
        for dirpath, dirnames, _ in os.walk(backup_path):
            for name in dirnames:
                relative = Path(os.path.relpath(os.path.join(dirpath, name), backup_path)).as_posix()
                if include is not None and relative not in include:
                    continue
                os.makedirs(os.path.join(target_path, relative), exist_ok=True)

        entries = record.files
        if include is not None:
            entries = [e for e in record.files if e.relative_path in include]
            dropped = len(record.files) - len(entries)
            if dropped:
                self._log(f"Skipping {dropped} files of {record.id} deleted before the restored backup")

        self._progress('Restoring files', start)
        total = len(entries)
        for index, entry in enumerate(entries, start=1):
            self._restore_entry(backup_path, entry, target_path, outcome)
            outcome.files_processed += 1
            outcome.total_size += entry.size
            self._progress('Restoring files', start + (end - start) * index // total)

        self._log(f"Restored {total} files from {os.path.basename(os.path.normpath(backup_path))}")

    def _restore_entry(self, backup_path: str, entry: FileEntry, target_path: str, outcome: BackupOutcome):
        stored_path = os.path.join(backup_path, entry.relative_path)
        dest_path = os.path.join(target_path, entry.relative_path)
        try:
            os.makedirs(os.path.dirname(dest_path), exist_ok=True)
            self.pipeline.reverse_file(stored_path, dest_path,
                                       compressed=entry.compressed, encrypted=entry.encrypted)
        except Exception:
            outcome.failed_files.append(entry.relative_path)
            raise

    # Verify

    def verify(self, backup_path: str, encryption_key: Optional[str] = None,
               key_file: Optional[str] = None) -> BackupOutcome:
        """
        Check a backup against its metadata.

        Every stored file must exist. When its content can be recovered (not
        encrypted, or a key is available) it is decrypted/decompressed and its
        SHA-256 compared with the recorded original checksum. The record
        checksum saved at creation time and, for incrementals, the parent
        link are checked too.
        """
        def body(outcome: BackupOutcome):
            self._progress('Starting verification', 0)
            record, document_item = self.read_record(backup_path)
            self._prepare_key(encryption_key, key_file, required=False)
            deep = not record.encrypted or self.pipeline.encryptor.has_key
            outcome.backup_id = record.id
            outcome.backup_type = record.backup_type
            outcome.parent_id = record.parent_id
            outcome.content_verified = deep
            if not deep:
                self._log("Backup is encrypted and no key was supplied, checking file presence only",
                          logging.WARNING)

            problems = self._verify_record(backup_path, record, document_item)

            self._progress('Verifying file integrity', 20)
            total = len(record.files)
            missing = 0
            with tempfile.TemporaryDirectory(prefix='backupchain_verify_') as scratch:
                for index, entry in enumerate(record.files, start=1):
                    problem = self._verify_entry(backup_path, entry, scratch, deep)
                    if problem:
                        if problem == MISSING_STORED_FILE:
                            missing += 1
                        outcome.failed_files.append(entry.relative_path)
                        self._log(f"Verification failed for {entry.relative_path}: {problem}", logging.ERROR)
                    else:
                        outcome.files_processed += 1
                        outcome.total_size += entry.size
                    self._progress('Verifying file integrity', 20 + 75 * index // total)

            if outcome.failed_files:
                problems.append(f"{len(outcome.failed_files)} of {total} files failed verification")
            self._progress('Verification complete', 100)

            if problems:
                outcome.status = STATUS_FAILED
                outcome.error_message = '; '.join(problems)
                if not outcome.failed_files:
                    outcome.error_kind = 'validation'
                elif missing == len(outcome.failed_files):
                    outcome.error_kind = 'io'
                else:
                    outcome.error_kind = 'transform'
                self._log(f"Verification failed: {outcome.error_message}", logging.ERROR)
            else:
                outcome.status = STATUS_SUCCESS
                self._log(f"Verified {total} files" + (" (content checked)" if deep else " (presence only)"))

        return self._run('verify', body)

    def _verify_record(self, backup_path: str, record: BackupRecord, item: Dict[str, Any]) -> List[str]:
        problems = []
        scratch_store = BackupChainStore()
        scratch_store.create(record)

        expected = item.get(RECORD_CHECKSUM_FIELD)
        if expected is None:
            self._log("Metadata carries no record checksum, skipping record check", logging.WARNING)
        elif scratch_store.compute_record_checksum(record.id) != expected:
            problems.append(f"Record checksum mismatch for backup {record.id}")

        if record.is_incremental:
            dest_root = os.path.dirname(os.path.abspath(backup_path))
            for path in LocalStorage(dest_root, create=False).list_backups():
                try:
                    scratch_store.load(os.path.join(path, METADATA_FILE), merge=True)
                except PersistenceError as e:
                    self._log(f"Warning: {e}", logging.WARNING)
            if not scratch_store.verify_integrity(record.id):
                problems.append(f"Parent backup {record.parent_id or '(none)'} of {record.id} not found")
        elif not scratch_store.verify_integrity(record.id):
            problems.append(f"Backup record {record.id} is inconsistent")

        return problems

    def _verify_entry(self, backup_path: str, entry: FileEntry, scratch: str, deep: bool) -> str:
        """Return a description of what is wrong with a stored file, or '' if it checks out."""
        stored_path = os.path.join(backup_path, entry.relative_path)
        if not os.path.isfile(stored_path):
            return MISSING_STORED_FILE
        if not deep:
            return ''

        recovered = os.path.join(scratch, 'recovered')
        try:
            self.pipeline.reverse_file(stored_path, recovered,
                                       compressed=entry.compressed, encrypted=entry.encrypted)
            actual = sha256_file(recovered)
        except (TransformError, OSError) as e:
            return str(e)
        finally:
            if os.path.exists(recovered):
                os.remove(recovered)

        if actual != entry.checksum:
            return f"checksum mismatch (expected {entry.checksum[:12]}, got {actual[:12]})"
        return ''

    # Destination queries

    def read_record(self, backup_path: str) -> Tuple[BackupRecord, Dict[str, Any]]:
        """
        Read the record stored in a backup directory.

        Returns:
            (record, raw document item) so callers can read extra fields

        Raises:
            ValidationError: If the directory or its metadata is missing
            PersistenceError: If the metadata cannot be parsed
        """
        if not os.path.isdir(backup_path):
            raise ValidationError(f"Backup directory does not exist: {backup_path}")

        metadata_path = os.path.join(backup_path, METADATA_FILE)
        document = BackupChainStore.read_document(metadata_path)
        if document is None:
            raise ValidationError(f"Backup metadata not found: {metadata_path}")

        for item in document.get('backups', []):
            try:
                return BackupRecord.from_dict(item), item
            except (KeyError, TypeError, ValueError) as e:
                raise PersistenceError(f"Malformed backup record in {metadata_path}: {e}")

        raise PersistenceError(f"No backup record in {metadata_path}")

    def load_destination(self, dest_root: str) -> Dict[str, str]:
        """
        Merge the records of every finished backup under dest_root into the store.

        Returns:
            Mapping of backup id to backup directory
        """
        locations = {}
        for path in LocalStorage(dest_root, create=False).list_backups():
            try:
                record = self.read_record(path)[0]
                self.store.load(os.path.join(path, METADATA_FILE), merge=True)
            except (ValidationError, PersistenceError) as e:
                self._log(f"Warning: skipping {path}: {e}", logging.WARNING)
                continue
            if record.id not in self.store:
                continue
            locations[record.id] = path
        return locations

    def list_backups(self, dest_root: str) -> List[Dict[str, Any]]:
        """
        Describe every finished backup under dest_root, oldest first.

        Returns:
            List of dicts with 'path', 'name', 'backup_id', 'backup_type',
            'parent_id', 'timestamp', 'files', 'total_size' and 'size' keys
        """
        backups = []
        for path in LocalStorage(dest_root, create=False).list_backups():
            try:
                record = self.read_record(path)[0]
            except (ValidationError, PersistenceError) as e:
                logger.warning(f"Skipping unreadable backup {path}: {e}")
                continue

            backups.append({
                'path': path,
                'name': os.path.basename(path),
                'backup_id': record.id,
                'backup_type': record.backup_type,
                'parent_id': record.parent_id,
                'timestamp': record.timestamp,
                'files': len(record.files),
                'total_size': record.total_size,
                'size': LocalStorage.backup_size(path),
            })
        return backups

    @staticmethod
    def backup_size(backup_path: str) -> int:
        return LocalStorage.backup_size(backup_path)

    @staticmethod
    def backup_timestamp(backup_path: str) -> datetime:
        return LocalStorage.backup_timestamp(backup_path)

    # Internals

    def _run(self, operation: str, body: Callable[[BackupOutcome], None],
             lock_path: Optional[str] = None) -> BackupOutcome:
        outcome = BackupOutcome(operation=operation)
        self.logs = []
        self._last_percent = 0
        self._log(f"Starting {operation}")

        try:
            if lock_path:
                with self.locks.hold(lock_path):
                    body(outcome)
            else:
                body(outcome)
        except Exception as e:
            outcome.status = STATUS_FAILED
            outcome.error_message = str(e)
            outcome.error_kind = classify_error(e)
            self._log(f"{operation.capitalize()} failed: {e}", logging.ERROR)
            if outcome.error_kind == 'internal':
                logger.exception(f"Unexpected error during {operation}")
        finally:
            outcome.completed_at = datetime.now()
            if outcome.status != STATUS_FAILED:
                self._log(f"{operation.capitalize()} finished ({outcome.status}) "
                          f"in {format_duration(outcome.duration)}")
            outcome.logs = list(self.logs)

        return outcome

    def _validate_source(self, source_path: str) -> Path:
        if not source_path:
            raise ValidationError("Source path is required")
        root = Path(source_path)
        if not root.exists():
            raise ValidationError(f"Source path does not exist: {source_path}")
        if not root.is_dir():
            raise ValidationError(f"Source path is not a directory: {source_path}")
        return root.resolve()

    def _prepare_key(self, encryption_key: Optional[str], key_file: Optional[str], required: bool):
        if encryption_key:
            self.pipeline.encryptor.set_key(encryption_key)
        elif key_file:
            self.pipeline.encryptor.load_key_file(key_file)
        elif required and not self.pipeline.encryptor.has_key:
            raise ValidationError("Encryption requested but no key or key file was supplied")

    def _progress(self, stage: str, percent: int):
        percent = max(self._last_percent, min(100, int(percent)))
        self._last_percent = percent

        if self.progress_callback is None:
            return
        try:
            self.progress_callback(stage, percent)
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level used for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(options: BackupOptions, incremental: bool = False,
               executor: Optional[BackupExecutor] = None) -> BackupOutcome:
    """
    Run a full or incremental backup with a fresh executor.

    Args:
        options: Backup settings
        incremental: Only back up changes since the latest backup
        executor: Executor to use instead of a new one

    Returns:
        BackupOutcome with execution results
    """
    executor = executor or BackupExecutor()
    if incremental:
        return executor.create_incremental(options)
    return executor.create_full(options)
