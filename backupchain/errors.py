"""
Exception hierarchy for backupchain.

Component modules raise these (or subclasses defined next to the component);
the backup executor converts them into failed outcomes instead of letting
them escape to the caller.
"""


class BackupError(Exception):
    """Base class for all backupchain errors."""
    pass


class ValidationError(BackupError):
    """Raised when an input (path, option, record field) is missing or invalid."""
    pass


class TransformError(BackupError):
    """Raised when compression or encryption fails on the data itself."""
    pass


class PersistenceError(BackupError):
    """Raised when a metadata, snapshot or schedule document cannot be written or parsed."""
    pass


class SchedulingError(BackupError):
    """Raised when the scheduler is misconfigured."""
    pass
