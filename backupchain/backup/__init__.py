"""
Backup module for backupchain.

This module handles the core backup functionality including:
- Change detection between directory snapshots
- Compression and encryption of stored files
- The backup chain store and its JSON persistence
- Execution orchestration (backup, restore, verify)
- Retention policy enforcement
"""

from .tracker import ChangeTracker, ChangeSet, ScanError
from .compression import Compressor, CompressionError
from .transform import TransformPipeline
from .chain import BackupChainStore
from .storage import LocalStorage, StorageError
from .executor import BackupExecutor, BackupOptions, BackupOutcome, DestinationBusyError, DestinationLocks
from .retention import RetentionManager
from backupchain.utils.crypto import Encryptor, EncryptionError, BadHeaderError, KeyFileError

__all__ = [
    'ChangeTracker',
    'ChangeSet',
    'ScanError',
    'Compressor',
    'CompressionError',
    'Encryptor',
    'EncryptionError',
    'BadHeaderError',
    'KeyFileError',
    'TransformPipeline',
    'BackupChainStore',
    'LocalStorage',
    'StorageError',
    'BackupExecutor',
    'BackupOptions',
    'BackupOutcome',
    'DestinationBusyError',
    'DestinationLocks',
    'RetentionManager'
]
