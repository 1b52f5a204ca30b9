"""
Backup module for pgbackup.

This module handles the core backup functionality including:
- pg_dump / pg_restore process management
- Streaming compression
- Storage (S3 and local)
- Fan-out upload to several backends
- Retention policy enforcement
- Backup selection for restores
- Execution orchestration
"""

from .executor import BackupExecutor, RestoreExecutor, NoSuitableBackupError
from .compression import compress, decompress
from .storage import S3Storage, LocalStorage, build_backends
from .retention import RetentionManager
from .catalog import merged_catalog, select_backup

__all__ = [
    'BackupExecutor',
    'RestoreExecutor',
    'NoSuitableBackupError',
    'compress',
    'decompress',
    'S3Storage',
    'LocalStorage',
    'build_backends',
    'RetentionManager',
    'merged_catalog',
    'select_backup'
]
