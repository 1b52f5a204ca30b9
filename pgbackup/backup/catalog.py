"""
Backup catalog and selection.

Merges the listings of several backends into one newest-first view and
resolves a reference ("latest", a name pattern or a backup id) to a single
backup. Selection is pure: it never touches storage or mutates the catalog.
"""

from typing import List, Optional, Iterable

from .storage import BackendKind, BackupEntry, StorageBackend


def merged_catalog(
    backends: Iterable[StorageBackend],
    include_s3: bool = True,
    include_local: bool = True
) -> List[BackupEntry]:
    """
    List backups across backends, newest first.

    Entries with equal modification times keep their per-backend order.

    Args:
        backends: Configured backends
        include_s3: Include the S3 backend
        include_local: Include the local backend

    Returns:
        Merged list sorted by last_modified descending

    Raises:
        StorageError: If any requested backend cannot be listed
    """
    entries = []
    for backend in backends:
        if backend.kind is BackendKind.S3 and not include_s3:
            continue
        if backend.kind is BackendKind.LOCAL and not include_local:
            continue
        entries.extend(backend.list_backups())

    return sorted(entries, key=lambda entry: entry.last_modified, reverse=True)


def select_latest(catalog: List[BackupEntry]) -> Optional[BackupEntry]:
    return catalog[0] if catalog else None


def select_by_pattern(catalog: List[BackupEntry], pattern: str) -> Optional[BackupEntry]:
    """Newest backup whose name contains `pattern`."""
    for entry in catalog:
        if pattern in entry.name:
            return entry
    return None


def select_by_specific_id(catalog: List[BackupEntry], backup_id: str) -> Optional[BackupEntry]:
    """
    Backup whose name equals `backup_id`, else the newest whose name contains it.
    """
    for entry in catalog:
        if entry.name == backup_id:
            return entry
    return select_by_pattern(catalog, backup_id)


def select_backup(
    catalog: List[BackupEntry],
    strategy: str,
    pattern: Optional[str] = None,
    backup_id: Optional[str] = None
) -> Optional[BackupEntry]:
    """
    Apply a selection strategy.

    Args:
        catalog: Merged catalog, newest first
        strategy: 'latest', 'pattern' or 'specific'
        pattern: Substring for the 'pattern' strategy
        backup_id: Backup name for the 'specific' strategy

    Returns:
        Selected backup, or None when nothing matches

    Raises:
        ValueError: If the strategy is unknown
    """
    if strategy == 'latest':
        return select_latest(catalog)
    if strategy == 'pattern':
        return select_by_pattern(catalog, pattern or '')
    if strategy == 'specific':
        return select_by_specific_id(catalog, backup_id or '')
    raise ValueError(f"Unknown selection strategy: {strategy}")
