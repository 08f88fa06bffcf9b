"""
Retention policy enforcement for backups.

Removes backup directories older than a configured number of days from a
destination. A backup that an incremental still depends on (any ancestor of
a retained backup) is kept regardless of its age, so every retained backup
stays restorable.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .executor import BackupExecutor
from .storage import LocalStorage, StorageError


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention policy enforcement for backup destinations.
    """

    def __init__(self, executor: Optional[BackupExecutor] = None):
        """Initialize retention manager."""
        self.executor = executor or BackupExecutor()
        self.logs = []

    def enforce_all(self, policies: List[Tuple[str, int]], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Enforce retention policies for several destinations.

        Args:
            policies: (destination root, retention days) pairs
            now: Reference time (default: current time)

        Returns:
            Dict with summary of cleanup operations:
            {
                'destinations_processed': int,
                'deleted': int,
                'kept_as_ancestor': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self.logs = []
        self._log(f"Starting retention enforcement for {len(policies)} destinations")

        summary = {
            'destinations_processed': 0,
            'deleted': 0,
            'kept_as_ancestor': 0,
            'errors': []
        }

        for dest_root, days in policies:
            try:
                result = self._enforce(dest_root, days, now)
            except Exception as e:
                error_msg = f"Failed to enforce retention for {dest_root}: {e}"
                self._log(error_msg)
                summary['errors'].append(error_msg)
                continue
            summary['destinations_processed'] += 1
            summary['deleted'] += len(result['deleted'])
            summary['kept_as_ancestor'] += len(result['kept_as_ancestor'])
            summary['errors'].extend(result['errors'])

        self._log(
            f"Retention enforcement complete. "
            f"Destinations: {summary['destinations_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Kept as ancestor: {summary['kept_as_ancestor']}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def enforce(self, dest_root: str, days: int, now: Optional[datetime] = None,
                dry_run: bool = False) -> Dict[str, Any]:
        """
        Enforce the retention policy for one destination.

        Args:
            dest_root: Destination root holding backup directories
            days: Backups older than this many days are removed
            now: Reference time (default: current time)
            dry_run: Only report what would be removed

        Returns:
            Dict with summary:
            {
                'examined': int,
                'deleted': List[str],           # backup directory paths
                'kept_as_ancestor': List[str],
                'incomplete_deleted': List[str],
                'errors': List[str],
                'logs': List[str]
            }

        Raises:
            ValueError: If days is negative
            DestinationBusyError: If a backup is running for dest_root
        """
        self.logs = []
        result = self._enforce(dest_root, days, now, dry_run)
        result['logs'] = self.logs
        return result

    def _enforce(self, dest_root: str, days: int, now: Optional[datetime] = None,
                 dry_run: bool = False) -> Dict[str, Any]:
        if days < 0:
            raise ValueError(f"Retention days must not be negative: {days}")

        now = now or datetime.now()
        cutoff = now - timedelta(days=days)
        self._log(f"Enforcing {days}-day retention for {dest_root} (cutoff {cutoff:%Y-%m-%d %H:%M:%S})")

        result = {
            'examined': 0,
            'deleted': [],
            'kept_as_ancestor': [],
            'incomplete_deleted': [],
            'errors': []
        }

        with self.executor.locks.hold(dest_root):
            store = self.executor.store
            store.clear()
            locations = self.executor.load_destination(dest_root)
            result['examined'] = len(locations)

            expired = {
                backup_id for backup_id in locations if store.get(backup_id).timestamp < cutoff
            }
            retained = set(locations) - expired

            needed = set()
            for backup_id in retained:
                needed.update(record.id for record in store.get_chain(backup_id))

            storage = LocalStorage(dest_root, create=False)
            for backup_id in sorted(expired, key=lambda i: locations[i]):
                path = locations[backup_id]
                if backup_id in needed:
                    self._log(f"Keeping {path}: a retained backup depends on it")
                    result['kept_as_ancestor'].append(path)
                    continue

                if dry_run:
                    self._log(f"Would delete {path}")
                    result['deleted'].append(path)
                    continue

                try:
                    storage.delete(path)
                    store.delete(backup_id)
                    result['deleted'].append(path)
                    self._log(f"Deleted {path}")
                except StorageError as e:
                    error_msg = f"Failed to delete {path}: {e}"
                    self._log(error_msg)
                    result['errors'].append(error_msg)

            for path in storage.list_incomplete():
                if storage.backup_timestamp(path) >= cutoff:
                    continue
                if dry_run:
                    self._log(f"Would delete incomplete backup {path}")
                    result['incomplete_deleted'].append(path)
                    continue
                try:
                    storage.delete(path)
                    result['incomplete_deleted'].append(path)
                    self._log(f"Deleted incomplete backup {path}")
                except StorageError as e:
                    error_msg = f"Failed to delete {path}: {e}"
                    self._log(error_msg)
                    result['errors'].append(error_msg)

            if not dry_run:
                store.prune_orphans()

        return result

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        log_entry = f"[{timestamp}] {message}"
        self.logs.append(log_entry)
        logger.info(message)
