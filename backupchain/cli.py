import argparse
import json
import logging
import os
import sys
import threading
from typing import Dict, List, Optional, Tuple

from backupchain import configure_logging, create_executor, create_scheduler
from backupchain.backup import BackupOptions, Encryptor, RetentionManager
from backupchain.backup.executor import BackupOutcome, run_backup
from backupchain.config import get_config
from backupchain.errors import BackupError, PersistenceError, SchedulingError
from backupchain.utils.formatting import format_bytes, format_duration, format_timestamp


logger = logging.getLogger(__name__)

JOBS_VERSION = '1.0'


def print_error(error_message: str, exit_code: int = 1) -> int:
    """
    Print an error message and return the exit code to use.

    Args:
        error_message (str): The error message to display
        exit_code (int, optional): The exit code to use. Defaults to 1.
    """
    logger.error(error_message)
    print(f"Error: {error_message}", file=sys.stderr)
    return exit_code


def print_progress(stage: str, percent: int) -> None:
    print(f"[{percent:3d}%] {stage}")


def resolve_key(args: argparse.Namespace) -> Tuple[Optional[str], Optional[str]]:
    """
    Work out the key material from --key, --key-file or --password/--salt.

    Returns:
        (encryption_key, key_file)
    """
    if getattr(args, 'password', None):
        if not args.salt:
            raise BackupError("--password requires --salt (generate one with 'keygen --salt-only')")
        return Encryptor.derive_key(args.password, args.salt), None
    return getattr(args, 'key', None), getattr(args, 'key_file', None)


def report_outcome(outcome: BackupOutcome, verbose: bool = False) -> int:
    """Print an outcome summary and translate it into an exit code."""
    if verbose:
        for line in outcome.logs:
            print(line)

    if not outcome.succeeded:
        for path in outcome.failed_files:
            print(f"  failed: {path}", file=sys.stderr)
        return print_error(f"{outcome.operation} failed ({outcome.error_kind}): {outcome.error_message}")

    if outcome.status == 'skipped':
        print("No changes since the last backup, nothing to do.")
        return 0

    print(f"{outcome.operation.capitalize()} completed in {format_duration(outcome.duration)}.")
    if outcome.backup_path:
        print(f"  Backup:   {outcome.backup_path}")
    if outcome.backup_id:
        print(f"  Id:       {outcome.backup_id}")
    print(f"  Files:    {outcome.files_processed}")
    print(f"  Size:     {format_bytes(outcome.total_size)}")
    if outcome.stored_size:
        print(f"  Stored:   {format_bytes(outcome.stored_size)}")
    return 0


def backup_command(args: argparse.Namespace, incremental: bool = False) -> int:
    """
    Execute the backup or incremental command.

    Args:
        args (argparse.Namespace): Command line arguments containing:
            - source / dest: Source tree and destination root
            - no_compress, level: Compression settings
            - encrypt, key, key_file, password, salt: Encryption settings
    """
    try:
        encryption_key, key_file = resolve_key(args)
    except BackupError as e:
        return print_error(str(e))

    options = BackupOptions(
        source_path=args.source,
        dest_path=args.dest,
        compress=not args.no_compress,
        encrypt=args.encrypt,
        encryption_key=encryption_key,
        key_file=key_file,
        compression_level=args.level,
    )
    executor = create_executor(args.env, progress_callback=None if args.quiet else print_progress)
    outcome = run_backup(options, incremental=incremental, executor=executor)
    return report_outcome(outcome, args.verbose)


def incremental_command(args: argparse.Namespace) -> int:
    return backup_command(args, incremental=True)


def restore_command(args: argparse.Namespace) -> int:
    """
    Execute the restore command.

    Restores a whole backup, its chain (--chain) or a single file (--file).
    """
    try:
        encryption_key, key_file = resolve_key(args)
    except BackupError as e:
        return print_error(str(e))

    executor = create_executor(args.env, progress_callback=None if args.quiet else print_progress)
    if args.file:
        outcome = executor.restore_one(args.backup, args.file, args.target, encryption_key, key_file)
    elif args.chain:
        outcome = executor.restore_chain(args.backup, args.target, encryption_key, key_file)
    else:
        outcome = executor.restore_all(args.backup, args.target, encryption_key, key_file)
    return report_outcome(outcome, args.verbose)


def verify_command(args: argparse.Namespace) -> int:
    """Execute the verify command against one backup directory."""
    try:
        encryption_key, key_file = resolve_key(args)
    except BackupError as e:
        return print_error(str(e))

    executor = create_executor(args.env, progress_callback=None if args.quiet else print_progress)
    outcome = executor.verify(args.backup, encryption_key, key_file)
    code = report_outcome(outcome, args.verbose)
    if code == 0 and not outcome.content_verified:
        print("  Note: encrypted content was not checked (no key supplied).")
    return code


def list_command(args: argparse.Namespace) -> int:
    """Execute the list command: one line per finished backup in a destination."""
    executor = create_executor(args.env)
    try:
        backups = executor.list_backups(args.dest)
    except BackupError as e:
        return print_error(f"Error listing backups: {e}")

    if not backups:
        print(f"No backups found in {args.dest}")
        return 0

    print(f"{'NAME':<28} {'TYPE':<12} {'TIMESTAMP':<20} {'FILES':>6} {'SIZE':>12}  PARENT")
    for backup in backups:
        print(
            f"{backup['name']:<28} {backup['backup_type']:<12} "
            f"{format_timestamp(backup['timestamp']):<20} {backup['files']:>6} "
            f"{format_bytes(backup['size']):>12}  {backup['parent_id'][:12] or '-'}"
        )
    print(f"total: {len(backups)} backups, {format_bytes(sum(b['size'] for b in backups))}")
    return 0


def load_jobs(path: str) -> Dict[str, BackupOptions]:
    """
    Read the backup settings saved for each schedule name.

    Raises:
        PersistenceError: If the file exists but cannot be parsed
    """
    if not os.path.exists(path):
        return {}

    try:
        with open(path, 'r', encoding='utf-8') as f:
            items = json.load(f)['jobs']
        return {name: BackupOptions.from_dict(item) for name, item in items.items()}
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
        raise PersistenceError(f"Failed to read schedule jobs {path}: {e}")


def save_jobs(path: str, jobs: Dict[str, BackupOptions]) -> None:
    """
    Write the backup settings of each schedule name.

    Raises:
        PersistenceError: If the file cannot be written
    """
    document = {
        'version': JOBS_VERSION,
        'jobs': {name: options.to_dict() for name, options in sorted(jobs.items())},
    }
    try:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(document, f, indent=2)
    except OSError as e:
        raise PersistenceError(f"Failed to write schedule jobs {path}: {e}")


def schedule_command(args: argparse.Namespace) -> int:
    """
    Execute the schedule command.

    Adds (or replaces) a named schedule that runs incremental backups of
    --source into --dest, saves it, then keeps the scheduler running in the
    foreground until interrupted. With --list, prints the saved schedules.

    The backup settings of every schedule are saved by name next to the
    schedule table, so schedules added by earlier runs keep backing up their
    own source and destination. An inline --key or --password key is held in
    memory only; such a schedule fails when run by a later invocation.
    """
    config = get_config(args.env)

    if args.list:
        try:
            scheduler = create_scheduler(args.env)
        except BackupError as e:
            return print_error(str(e))
        entries = scheduler.list_schedules()
        if not entries:
            print("No schedules saved.")
        for entry in entries:
            next_run = format_timestamp(entry.next_run) if entry.next_run else 'never'
            state = 'enabled' if entry.enabled else 'paused'
            print(f"{entry.name:<24} {entry.kind.name.lower():<8} every {entry.interval}s  next: {next_run}  {state}")
        return 0

    if not args.source or not args.dest:
        return print_error("schedule needs --source and --dest")

    try:
        encryption_key, key_file = resolve_key(args)
    except BackupError as e:
        return print_error(str(e))

    options = BackupOptions(
        source_path=os.path.abspath(args.source),
        dest_path=os.path.abspath(args.dest),
        compress=not args.no_compress,
        encrypt=args.encrypt,
        encryption_key=encryption_key,
        key_file=os.path.abspath(key_file) if key_file else None,
        compression_level=args.level,
    )

    try:
        jobs = load_jobs(config.SCHEDULE_JOBS_FILE)
    except BackupError as e:
        return print_error(str(e))
    jobs[args.name] = options

    def run_scheduled(name: str) -> bool:
        job = jobs.get(name)
        if job is None:
            raise SchedulingError(f"No backup settings saved for schedule '{name}'")
        if job.encrypt and not job.encryption_key and not job.key_file:
            raise SchedulingError(
                f"Schedule '{name}' encrypts with a key that is not saved; schedule it again with --key-file"
            )
        print(f"Executing scheduled backup: {name}")
        outcome = run_backup(job, incremental=True, executor=create_executor(args.env))
        report_outcome(outcome, args.verbose)
        return outcome.succeeded

    def report_failure(name: str, message: str) -> None:
        print_error(message)

    try:
        scheduler = create_scheduler(args.env, run_scheduled, report_failure)
        scheduler.schedule(args.name, args.type, args.interval)
        for entry in scheduler.list_schedules():
            if entry.name not in jobs:
                logger.warning(f"Schedule '{entry.name}' has no saved backup settings and will fail when due")
        save_jobs(config.SCHEDULE_JOBS_FILE, jobs)
        scheduler.save(config.SCHEDULE_FILE)
    except BackupError as e:
        return print_error(str(e))

    entry = scheduler.get(args.name)
    print(f"Scheduled '{entry.name}' ({entry.kind.name.lower()}), next run {format_timestamp(entry.next_run)}")
    print("Press Ctrl+C to stop.")

    scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("\nStopping scheduler...")
    finally:
        scheduler.stop()
        scheduler.save(config.SCHEDULE_FILE)
    return 0


def keygen_command(args: argparse.Namespace) -> int:
    """
    Execute the keygen command.

    Writes a random 256-bit key file, or derives a key from --password and
    --salt (a random salt is generated when none is given).
    """
    if args.salt_only:
        print(Encryptor.generate_salt())
        return 0

    if args.password:
        salt = args.salt or Encryptor.generate_salt()
        key = Encryptor.derive_key(args.password, salt)
        print(f"salt: {salt}")
        if args.output:
            encryptor = Encryptor(key)
            try:
                encryptor.save_key_file(args.output)
            except OSError as e:
                return print_error(f"Failed to write key file: {e}")
            print(f"Key written to {args.output}")
        else:
            print(f"key:  {key}")
        return 0

    if not args.output:
        return print_error("keygen needs --output (or --password / --salt-only)")

    encryptor = Encryptor()
    encryptor.generate_key(256)
    try:
        encryptor.save_key_file(args.output)
    except OSError as e:
        return print_error(f"Failed to write key file: {e}")
    print(f"Key written to {args.output}")
    return 0


def prune_command(args: argparse.Namespace) -> int:
    """Execute the prune command: apply a retention window to a destination."""
    manager = RetentionManager(create_executor(args.env))
    try:
        result = manager.enforce(args.dest, args.days, dry_run=args.dry_run)
    except (BackupError, ValueError) as e:
        return print_error(f"Error pruning backups: {e}")

    verb = 'Would delete' if args.dry_run else 'Deleted'
    for path in result['deleted']:
        print(f"{verb}: {path}")
    for path in result['incomplete_deleted']:
        print(f"{verb} incomplete: {path}")
    for path in result['kept_as_ancestor']:
        print(f"Kept (needed by a newer backup): {path}")
    print(
        f"Examined {result['examined']} backups, {verb.lower()} {len(result['deleted'])}, "
        f"kept {len(result['kept_as_ancestor'])} as ancestors."
    )

    if result['errors']:
        for error in result['errors']:
            print_error(error)
        return 1
    return 0


def add_transform_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--no-compress", action="store_true", help="Store files without compression")
    parser.add_argument("--level", type=int, default=6, help="Compression level 0-9")
    parser.add_argument("--encrypt", action="store_true", help="Encrypt stored files")


def add_key_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--key", help="Encryption key (64 hex characters)")
    group.add_argument("--key-file", help="File holding a raw 32-byte key")
    group.add_argument("--password", help="Derive the key from a password (needs --salt)")
    parser.add_argument("--salt", help="Salt for --password")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backupchain",
        description="File tree backup with incremental chains, compression and encryption",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("--env", default=None, help="Configuration name (development, testing, production)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print the operation log")
    parser.add_argument("-q", "--quiet", action="store_true", help="Do not print progress")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    for name, help_text in (("backup", "Create a full backup"),
                            ("incremental", "Back up changes since the latest backup")):
        backup_parser = subparsers.add_parser(name, help=help_text)
        backup_parser.add_argument("--source", required=True, help="Directory to back up")
        backup_parser.add_argument("--dest", required=True, help="Destination root for backups")
        add_transform_arguments(backup_parser)
        add_key_arguments(backup_parser)

    restore_parser = subparsers.add_parser("restore", help="Restore a backup into a directory")
    restore_parser.add_argument("--backup", required=True, help="Backup directory to restore from")
    restore_parser.add_argument("--target", required=True, help="Directory to restore into")
    restore_parser.add_argument("--file", help="Restore only this relative path")
    restore_parser.add_argument("--chain", action="store_true",
                                help="Restore the full backup and every incremental up to this one")
    add_key_arguments(restore_parser)

    verify_parser = subparsers.add_parser("verify", help="Verify a backup against its metadata")
    verify_parser.add_argument("--backup", required=True, help="Backup directory to verify")
    add_key_arguments(verify_parser)

    list_parser = subparsers.add_parser("list", help="List backups in a destination")
    list_parser.add_argument("--dest", required=True, help="Destination root")

    schedule_parser = subparsers.add_parser("schedule", help="Run incremental backups on a schedule")
    schedule_parser.add_argument("--name", default="auto_backup", help="Schedule name")
    schedule_parser.add_argument("--type", default="custom",
                                 help="once, hourly, daily, weekly, monthly or custom")
    schedule_parser.add_argument("--interval", type=int, help="Seconds between runs (custom schedules)")
    schedule_parser.add_argument("--source", help="Directory to back up")
    schedule_parser.add_argument("--dest", help="Destination root for backups")
    schedule_parser.add_argument("--list", action="store_true", help="List saved schedules and exit")
    add_transform_arguments(schedule_parser)
    add_key_arguments(schedule_parser)

    keygen_parser = subparsers.add_parser("keygen", help="Generate a key file, a salt or a derived key")
    keygen_parser.add_argument("--output", help="Key file to write")
    keygen_parser.add_argument("--password", help="Derive the key from this password")
    keygen_parser.add_argument("--salt", help="Salt for --password (random if omitted)")
    keygen_parser.add_argument("--salt-only", action="store_true", help="Print a random salt and exit")

    prune_parser = subparsers.add_parser("prune", help="Delete backups older than a number of days")
    prune_parser.add_argument("--dest", required=True, help="Destination root")
    prune_parser.add_argument("--days", type=int, required=True, help="Retention window in days")
    prune_parser.add_argument("--dry-run", action="store_true", help="Only report what would be deleted")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the command line interface.
    Parses arguments and dispatches to the command handlers.

    Returns:
        Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    command_handlers = {
        "backup": backup_command,
        "incremental": incremental_command,
        "restore": restore_command,
        "verify": verify_command,
        "list": list_command,
        "schedule": schedule_command,
        "keygen": keygen_command,
        "prune": prune_command,
    }

    if args.command not in command_handlers:
        parser.print_help()
        return 1

    try:
        configure_logging(get_config(args.env))
    except OSError as e:
        print(f"Warning: file logging disabled: {e}", file=sys.stderr)

    return command_handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
