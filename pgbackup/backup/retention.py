"""
Retention policy enforcement for backups.

Manages cleanup of old backups from S3 and local storage. Each backend has
its own RetentionPolicy; a backup is deleted when it is older than
max_age_days or falls beyond the newest max_count backups.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any, Optional, Iterable

from pgbackup.settings import RetentionPolicy, Settings
from .storage import BackupEntry, StorageBackend, StorageError, DeleteError, build_backends


logger = logging.getLogger(__name__)


def select_for_deletion(
    entries: List[BackupEntry],
    policy: RetentionPolicy,
    now: Optional[datetime] = None
) -> List[BackupEntry]:
    """
    Compute the backups a policy removes.

    The result is the union of the age rule and the count rule, in the
    order of `entries`, with each backup listed once.

    Args:
        entries: Backups of one backend, newest first
        policy: Retention policy of that backend
        now: Reference time (defaults to current UTC time)

    Returns:
        Backups to delete
    """
    if not policy.enabled:
        return []

    now = now or datetime.now(timezone.utc)
    doomed = set()

    if policy.max_age_days is not None:
        cutoff = now - timedelta(days=policy.max_age_days)
        for entry in entries:
            if entry.last_modified < cutoff:
                doomed.add(entry.identity)

    if policy.max_count is not None:
        for entry in entries[policy.max_count:]:
            doomed.add(entry.identity)

    selected = []
    seen = set()
    for entry in entries:
        if entry.identity in doomed and entry.identity not in seen:
            seen.add(entry.identity)
            selected.append(entry)

    return selected


class RetentionManager:
    """
    Applies retention policies to storage backends.

    Deletion failures are logged per backup and never abort the cleanup.
    """

    def __init__(self):
        """Initialize retention manager."""
        self.logs = []

    def cleanup(self, backend: StorageBackend, policy: Optional[RetentionPolicy] = None) -> int:
        """
        Enforce a retention policy on one backend.

        Args:
            backend: Storage backend to clean
            policy: Policy to apply (defaults to the backend's own policy)

        Returns:
            Number of backups actually deleted

        Raises:
            StorageError: If the backend cannot be listed
        """
        policy = policy or backend.retention

        if not policy.enabled:
            self._log(f"Retention for {backend.label}: not configured, skipping")
            return 0

        self._log(
            f"Retention for {backend.label}: "
            f"max_age_days={policy.max_age_days}, max_count={policy.max_count}"
        )

        entries = backend.list_backups()
        to_delete = select_for_deletion(entries, policy)

        deleted_count = 0
        for entry in to_delete:
            try:
                backend.delete(entry.key)
                deleted_count += 1
                self._log(f"Deleted {entry.backend.value} backup: {entry.key}")
            except DeleteError as e:
                self._log(f"Failed to delete {entry.backend.value} backup {entry.key}: {e}", logging.ERROR)

        self._log(f"Retention for {backend.label}: {deleted_count}/{len(entries)} backups removed")
        return deleted_count

    def enforce_all(self, backends: Iterable[StorageBackend]) -> Dict[str, Any]:
        """
        Enforce retention on every backend independently.

        Returns:
            Dict with summary of cleanup operations:
            {
                'backends_processed': int,
                'deleted': {'s3': int, 'local': int},
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement")

        summary = {
            'backends_processed': 0,
            'deleted': {},
            'errors': []
        }

        for backend in backends:
            try:
                removed = self.cleanup(backend)
                summary['backends_processed'] += 1
                kind = backend.kind.value
                summary['deleted'][kind] = summary['deleted'].get(kind, 0) + removed
            except StorageError as e:
                error_msg = f"Failed to enforce retention for {backend.label}: {e}"
                self._log(error_msg, logging.ERROR)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Backends: {summary['backends_processed']}, "
            f"Deleted: {sum(summary['deleted'].values())}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention_policies(settings: Settings) -> Dict[str, Any]:
    """
    Enforce retention policies for all configured backends.

    Called by the retention command and the scheduled retention job.

    Returns:
        Summary dict from RetentionManager.enforce_all()
    """
    manager = RetentionManager()
    return manager.enforce_all(build_backends(settings))
