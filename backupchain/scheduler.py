"""
Recurring backup scheduling.

BackupScheduler owns a table of named ScheduleEntry objects. An APScheduler
BackgroundScheduler runs a single poll job every few seconds; each poll fires
the enabled entries whose next run has passed by invoking the registered
backup callback with the entry name, retrying failed runs with a fixed delay.

The table is guarded by a lock shared between the poll job and the public
schedule/cancel/pause/resume calls. Callbacks are invoked outside the lock.
"""

import json
import logging
import os
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backupchain.errors import PersistenceError, SchedulingError
from backupchain.models import ScheduleEntry, ScheduleKind
from backupchain.utils.formatting import truncate_to_seconds


logger = logging.getLogger(__name__)

SCHEDULE_VERSION = '1.0'
POLL_JOB_ID = 'backupchain_schedule_poll'

# Fixed intervals in seconds; monthly is approximated as 30 days
KIND_INTERVALS = {
    ScheduleKind.HOURLY: 3600,
    ScheduleKind.DAILY: 86400,
    ScheduleKind.WEEKLY: 7 * 86400,
    ScheduleKind.MONTHLY: 30 * 86400,
}

BackupCallback = Callable[[str], Any]
ErrorCallback = Callable[[str, str], None]


def parse_kind(kind: Union[ScheduleKind, int, str]) -> ScheduleKind:
    """
    Accept a ScheduleKind, its ordinal, or its name ('daily', 'DAILY').

    Raises:
        SchedulingError: If the value names no schedule kind
    """
    if isinstance(kind, ScheduleKind):
        return kind
    try:
        if isinstance(kind, str) and not kind.isdigit():
            return ScheduleKind[kind.upper()]
        return ScheduleKind(int(kind))
    except (KeyError, ValueError):
        valid = ', '.join(k.name.lower() for k in ScheduleKind)
        raise SchedulingError(f"Invalid schedule type: {kind}. Valid options: {valid}")


def interval_for(kind: ScheduleKind, interval: Optional[int] = None) -> int:
    """
    Seconds between runs for a schedule kind.

    Raises:
        SchedulingError: If a custom schedule has no positive interval
    """
    if kind == ScheduleKind.CUSTOM:
        if not interval or interval <= 0:
            raise SchedulingError("Custom schedules need a positive interval in seconds")
        return int(interval)
    if kind == ScheduleKind.ONCE:
        return 0
    return KIND_INTERVALS[kind]


def _succeeded(result: Any) -> bool:
    # Callbacks may return a plain bool or an outcome object
    if hasattr(result, 'succeeded'):
        return bool(result.succeeded)
    return bool(result)


class BackupScheduler:
    """Fires named backup schedules from a background poll loop."""

    def __init__(
        self,
        backup_callback: Optional[BackupCallback] = None,
        error_callback: Optional[ErrorCallback] = None,
        poll_interval: int = 10,
        retry_attempts: int = 3,
        retry_delay: int = 60,
        error_backoff: int = 60,
        max_concurrent: int = 1
    ):
        self.poll_interval = poll_interval
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.error_backoff = error_backoff
        self.max_concurrent = max_concurrent

        self._backup_callback = backup_callback
        self._error_callback = error_callback
        self._entries: Dict[str, ScheduleEntry] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._scheduler: Optional[BackgroundScheduler] = None
        self._backoff_until: Optional[datetime] = None

    @classmethod
    def from_config(cls, config, backup_callback: Optional[BackupCallback] = None,
                    error_callback: Optional[ErrorCallback] = None) -> 'BackupScheduler':
        """Build a scheduler from a configuration class."""
        return cls(
            backup_callback=backup_callback,
            error_callback=error_callback,
            poll_interval=config.SCHEDULER_POLL_INTERVAL,
            retry_attempts=config.SCHEDULER_RETRY_ATTEMPTS,
            retry_delay=config.SCHEDULER_RETRY_DELAY,
            error_backoff=config.SCHEDULER_ERROR_BACKOFF,
            max_concurrent=config.SCHEDULER_MAX_CONCURRENT,
        )

    def set_backup_callback(self, callback: Optional[BackupCallback]):
        with self._lock:
            self._backup_callback = callback

    def set_error_callback(self, callback: Optional[ErrorCallback]):
        with self._lock:
            self._error_callback = callback

    # Schedule table

    def schedule(self, name: str, kind: Union[ScheduleKind, int, str], interval: Optional[int] = None,
                 backup_name: str = '') -> ScheduleEntry:
        """
        Add or replace a named schedule.

        A one-shot schedule is due immediately; every other kind first fires
        one interval from now.

        Args:
            name: Unique schedule name
            kind: Schedule kind (enum, ordinal or name)
            interval: Seconds between runs, required for custom schedules
            backup_name: Backup job the schedule triggers (defaults to name)

        Returns:
            A copy of the stored entry
        """
        if not name:
            raise SchedulingError("Schedule name is required")

        kind = parse_kind(kind)
        seconds = interval_for(kind, interval)
        now = truncate_to_seconds(datetime.now())
        next_run = now if kind == ScheduleKind.ONCE else now + timedelta(seconds=seconds)

        entry = ScheduleEntry(
            name=name,
            kind=kind,
            interval=seconds,
            next_run=next_run,
            backup_name=backup_name or name,
            enabled=True,
        )
        return self._store(entry)

    def schedule_at(self, name: str, when: datetime, backup_name: str = '') -> ScheduleEntry:
        """Add or replace a one-shot schedule due at ``when``."""
        if not name:
            raise SchedulingError("Schedule name is required")

        entry = ScheduleEntry(
            name=name,
            kind=ScheduleKind.ONCE,
            interval=0,
            next_run=truncate_to_seconds(when),
            backup_name=backup_name or name,
            enabled=True,
        )
        return self._store(entry)

    def _store(self, entry: ScheduleEntry) -> ScheduleEntry:
        with self._lock:
            replaced = entry.name in self._entries
            self._entries[entry.name] = entry
        logger.info(
            f"{'Replaced' if replaced else 'Scheduled'} '{entry.name}' "
            f"({entry.kind.name.lower()}, next run {entry.next_run:%Y-%m-%d %H:%M:%S})"
        )
        return replace(entry)

    def cancel(self, name: str) -> bool:
        with self._lock:
            removed = self._entries.pop(name, None) is not None
        if removed:
            logger.info(f"Cancelled schedule '{name}'")
        return removed

    def pause(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def resume(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return False
            entry.enabled = enabled
        logger.info(f"{'Resumed' if enabled else 'Paused'} schedule '{name}'")
        return True

    def get(self, name: str) -> Optional[ScheduleEntry]:
        with self._lock:
            entry = self._entries.get(name)
            return replace(entry) if entry else None

    def list_schedules(self) -> List[ScheduleEntry]:
        """Copies of every entry, sorted by name."""
        with self._lock:
            return [replace(self._entries[name]) for name in sorted(self._entries)]

    def next_scheduled_time(self) -> Optional[datetime]:
        """Earliest next run among enabled entries, or None."""
        with self._lock:
            times = [e.next_run for e in self._entries.values() if e.enabled and e.next_run is not None]
        return min(times) if times else None

    def active_count(self) -> int:
        """Number of enabled entries that still have a run ahead of them."""
        with self._lock:
            return sum(1 for e in self._entries.values() if e.enabled and e.next_run is not None)

    # Execution

    @property
    def running(self) -> bool:
        scheduler = self._scheduler
        return scheduler is not None and scheduler.running

    def start(self):
        """Start the background poll loop. Does nothing if it is already running."""
        with self._lock:
            if self.running:
                logger.debug("Scheduler already running")
                return

            if self.max_concurrent > 1:
                logger.info(f"max_concurrent={self.max_concurrent}: scheduled backups still run one at a time")

            self._stop_event.clear()
            self._backoff_until = None

            executors = {
                'default': ThreadPoolExecutor(max_workers=1)
            }

            job_defaults = {
                'coalesce': True,  # Collapse polls missed while a backup was running
                'max_instances': 1,  # Never overlap two polls
                'misfire_grace_time': None
            }

            self._scheduler = BackgroundScheduler(executors=executors, job_defaults=job_defaults)
            self._scheduler.add_job(
                func=self._poll,
                trigger=IntervalTrigger(seconds=self.poll_interval),
                id=POLL_JOB_ID,
                name='Backup schedule poll',
                next_run_time=datetime.now(),
                replace_existing=True
            )
            self._scheduler.start()

        logger.info(f"Scheduler started (poll every {self.poll_interval}s, {len(self._entries)} schedules)")

    def stop(self):
        """
        Stop the poll loop and wait for it to finish.

        A backup callback already in progress is allowed to return; pending
        retries are abandoned. No callback runs after this method returns.
        """
        with self._lock:
            scheduler = self._scheduler
            self._scheduler = None

        if scheduler is None:
            return

        self._stop_event.set()
        if scheduler.running:
            scheduler.shutdown(wait=True)
        self._stop_event.clear()
        logger.info("Scheduler stopped")

    def _poll(self):
        now = datetime.now()
        if self._backoff_until is not None and now < self._backoff_until:
            return
        self._backoff_until = None

        try:
            self.run_pending(now)
        except Exception as e:
            logger.exception(f"Scheduler poll failed, backing off for {self.error_backoff}s: {e}")
            self._backoff_until = now + timedelta(seconds=self.error_backoff)

    def run_pending(self, now: Optional[datetime] = None) -> int:
        """
        Fire every entry that is due at ``now`` (default: current time).

        Entries fire one after another, oldest next run first. Each fired
        entry then advances: one-shot entries are disabled with no next run,
        the others move to ``now`` plus their interval. An entry cancelled or
        rescheduled while its backup ran is left as the caller set it.

        Returns:
            Number of entries fired
        """
        now = now or datetime.now()

        with self._lock:
            due = [replace(e) for e in self._entries.values() if e.is_due(now)]
        due.sort(key=lambda e: (e.next_run, e.name))

        fired = 0
        for entry in due:
            if self._stop_event.is_set():
                logger.info("Scheduler stopping, remaining due schedules left for later")
                break

            with self._lock:
                current = self._entries.get(entry.name)
                if current is None or not current.is_due(now):
                    continue

            logger.info(f"Running scheduled backup '{entry.name}' ({entry.backup_name})")
            self._run_with_retries(entry)
            fired += 1
            self._advance(entry, now)

        return fired

    def _run_with_retries(self, entry: ScheduleEntry) -> bool:
        attempts = max(1, self.retry_attempts)
        last_error = ''
        attempt = 0

        while attempt < attempts:
            attempt += 1
            with self._lock:
                callback = self._backup_callback
            if callback is None:
                last_error = "no backup callback registered"
                break

            try:
                if _succeeded(callback(entry.name)):
                    logger.info(f"Scheduled backup '{entry.name}' succeeded (attempt {attempt})")
                    return True
                last_error = "backup reported failure"
            except Exception as e:
                last_error = str(e)
                logger.warning(f"Scheduled backup '{entry.name}' raised: {e}")

            if attempt < attempts:
                logger.warning(
                    f"Scheduled backup '{entry.name}' failed (attempt {attempt}/{attempts}), "
                    f"retrying in {self.retry_delay}s"
                )
                if self._stop_event.wait(self.retry_delay):
                    last_error += "; retries abandoned because the scheduler is stopping"
                    break

        self._report_error(
            entry.name,
            f"Scheduled backup '{entry.name}' failed after {attempt} attempt(s): {last_error}"
        )
        return False

    def _advance(self, fired: ScheduleEntry, now: datetime):
        with self._lock:
            current = self._entries.get(fired.name)
            if current is None or current.next_run != fired.next_run or current.kind != fired.kind:
                return

            if current.kind == ScheduleKind.ONCE:
                current.next_run = None
                current.enabled = False
            else:
                current.next_run = truncate_to_seconds(now) + timedelta(seconds=current.interval)

    def _report_error(self, name: str, message: str):
        logger.error(message)
        with self._lock:
            callback = self._error_callback
        if callback is None:
            return
        try:
            callback(name, message)
        except Exception as e:
            logger.warning(f"Error callback raised: {e}")

    # Persistence

    def save(self, path: str):
        """
        Write the schedule table to a JSON document.

        Raises:
            PersistenceError: If the document cannot be written
        """
        document = {
            'version': SCHEDULE_VERSION,
            'schedules': [entry.to_dict() for entry in self.list_schedules()],
        }
        try:
            directory = os.path.dirname(os.path.abspath(path))
            os.makedirs(directory, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(document, f, indent=2)
        except OSError as e:
            raise PersistenceError(f"Failed to write schedules {path}: {e}")

    def load(self, path: str) -> int:
        """
        Replace the schedule table with the entries of a JSON document.

        A missing file leaves the table empty. Entries that fail to parse are
        logged and dropped.

        Returns:
            Number of entries loaded

        Raises:
            PersistenceError: If the file exists but is not a schedule document
        """
        entries = {}

        if os.path.exists(path):
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    document = json.load(f)
                items = document['schedules']
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise PersistenceError(f"Failed to read schedules {path}: {e}")

            for item in items:
                try:
                    entry = ScheduleEntry.from_dict(item)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Dropping malformed schedule in {path}: {e}")
                    continue
                entries[entry.name] = entry

        with self._lock:
            self._entries = entries

        logger.debug(f"Loaded {len(entries)} schedules from {path}")
        return len(entries)

    def diagnostics(self) -> Dict[str, Any]:
        """
        Scheduler state for troubleshooting.

        Returns:
            Dict with running state, schedule counts and per-entry details
        """
        next_run = self.next_scheduled_time()
        return {
            'running': self.running,
            'schedule_count': len(self.list_schedules()),
            'active_count': self.active_count(),
            'next_run': next_run.isoformat() if next_run else None,
            'backoff_until': self._backoff_until.isoformat() if self._backoff_until else None,
            'schedules': [
                {
                    'name': entry.name,
                    'type': entry.kind.name.lower(),
                    'interval': entry.interval,
                    'next_run': entry.next_run.isoformat() if entry.next_run else None,
                    'backup_name': entry.backup_name,
                    'enabled': entry.enabled,
                }
                for entry in self.list_schedules()
            ]
        }
