"""
Unit tests for retention policy enforcement (pgbackup/backup/retention.py).

Tests deletion selection (age rule, count rule and their union) and the
cleanup of storage backends.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from pgbackup.settings import Settings, LocalSettings, RetentionPolicy
from pgbackup.backup.retention import RetentionManager, enforce_retention_policies, select_for_deletion
from pgbackup.backup.storage import BackendKind, BackupEntry, LocalStorage


NOW = datetime(2024, 1, 20, 12, 0, 0, tzinfo=timezone.utc)


def _entry(days_ago, name=None, backend=BackendKind.LOCAL):
    when = NOW - timedelta(days=days_ago)
    name = name or when.strftime('%Y-%m-%dT%H:%M:%S')
    return BackupEntry(name=name, key=name, backend=backend, size=1, last_modified=when)


def _newest_first(*days_ago):
    return [_entry(days) for days in sorted(days_ago)]


class TestSelectForDeletion:
    """Test select_for_deletion()."""

    def test_disabled_policy(self):
        """Test a disabled policy selects nothing."""
        entries = _newest_first(1, 100, 1000)

        assert select_for_deletion(entries, RetentionPolicy(), now=NOW) == []

    def test_max_count_keeps_newest(self):
        """Test maxCount=2 over five backups removes the three oldest."""
        entries = _newest_first(1, 2, 3, 4, 5)

        doomed = select_for_deletion(entries, RetentionPolicy(max_count=2), now=NOW)

        assert doomed == entries[2:]

    def test_max_age_removes_old_only(self):
        """Test maxAgeDays=7 removes the 10 day old backup and keeps the 2 day old one."""
        entries = _newest_first(2, 10)

        doomed = select_for_deletion(entries, RetentionPolicy(max_age_days=7), now=NOW)

        assert doomed == [entries[1]]

    def test_age_boundary_is_kept(self):
        """Test a backup exactly at the cutoff is not deleted."""
        entries = _newest_first(7)

        assert select_for_deletion(entries, RetentionPolicy(max_age_days=7), now=NOW) == []

    def test_union_of_rules(self):
        """Test both rules combine as a union without duplicates."""
        entries = _newest_first(1, 2, 3, 20, 30)
        policy = RetentionPolicy(max_age_days=10, max_count=4)

        doomed = select_for_deletion(entries, policy, now=NOW)

        by_age = select_for_deletion(entries, RetentionPolicy(max_age_days=10), now=NOW)
        by_count = select_for_deletion(entries, RetentionPolicy(max_count=4), now=NOW)
        assert doomed == [entries[3], entries[4]]
        assert {e.identity for e in doomed} == {e.identity for e in by_age} | {e.identity for e in by_count}
        assert len(doomed) == len({e.identity for e in doomed})

    def test_count_rule_removes_recent_backups(self):
        """Test the count rule applies even when every backup is recent."""
        entries = _newest_first(1, 2, 3)

        doomed = select_for_deletion(entries, RetentionPolicy(max_age_days=30, max_count=1), now=NOW)

        assert doomed == entries[1:]

    def test_fewer_backups_than_count(self):
        """Test nothing is removed below the count limit."""
        entries = _newest_first(1, 2)

        assert select_for_deletion(entries, RetentionPolicy(max_count=5), now=NOW) == []

    @freeze_time('2024-01-20 12:00:00')
    def test_now_defaults_to_current_time(self):
        """Test the age rule uses the current UTC time by default."""
        entries = _newest_first(2, 10)

        assert select_for_deletion(entries, RetentionPolicy(max_age_days=7)) == [entries[1]]


class TestRetentionManager:
    """Test RetentionManager.cleanup()."""

    def test_disabled_policy_does_not_list(self):
        """Test a disabled policy never touches storage."""
        backend = MagicMock()
        backend.retention = RetentionPolicy()

        assert RetentionManager().cleanup(backend) == 0

        backend.list_backups.assert_not_called()
        backend.delete.assert_not_called()

    @freeze_time('2024-01-20 12:00:00')
    def test_cleanup_deletes_selected(self, memory_storage):
        """Test cleanup deletes exactly the selected backups."""
        backend = memory_storage(retention=RetentionPolicy(max_count=2))
        for days in (1, 2, 3, 4, 5):
            backend.add((NOW - timedelta(days=days)).strftime('%Y-%m-%dT%H:%M:%S'))

        removed = RetentionManager().cleanup(backend)

        assert removed == 3
        assert sorted(backend.objects) == ['2024-01-18T12:00:00', '2024-01-19T12:00:00']

    @freeze_time('2024-01-20 12:00:00')
    def test_delete_failure_continues(self, memory_storage):
        """Test one failing delete does not stop the others."""
        backend = memory_storage(retention=RetentionPolicy(max_count=1))
        for days in (1, 2, 3, 4):
            backend.add((NOW - timedelta(days=days)).strftime('%Y-%m-%dT%H:%M:%S'))
        backend.fail_delete.add('2024-01-18T12:00:00')

        manager = RetentionManager()
        removed = manager.cleanup(backend)

        assert removed == 2
        assert '2024-01-18T12:00:00' in backend.objects
        assert any('Failed to delete' in line for line in manager.logs)

    def test_explicit_policy_overrides_backend(self, memory_storage):
        """Test a policy argument takes precedence over the backend's."""
        backend = memory_storage(retention=RetentionPolicy())
        backend.add('2024-01-19T12:00:00')
        backend.add('2024-01-18T12:00:00')

        assert RetentionManager().cleanup(backend, RetentionPolicy(max_count=1)) == 1
        assert list(backend.objects) == ['2024-01-19T12:00:00']

    def test_listing_failure_propagates(self, memory_storage):
        """Test listing errors are raised to the caller."""
        from pgbackup.backup.storage import StorageError

        backend = memory_storage(retention=RetentionPolicy(max_count=1))
        backend.fail_list = True

        with pytest.raises(StorageError):
            RetentionManager().cleanup(backend)

    def test_local_storage_cleanup(self, tmp_path):
        """Test cleanup against a real directory ignores unrelated files."""
        for name in ('2024-01-15T00:00:00.zstd', '2024-01-16T00:00:00.zstd', '2024-01-17T00:00:00.zstd'):
            (tmp_path / name).write_bytes(b'x')
        (tmp_path / 'notes.txt').write_text('keep me')
        import os
        for index, name in enumerate(sorted(os.listdir(tmp_path))):
            os.utime(tmp_path / name, (1_700_000_000 + index, 1_700_000_000 + index))

        backend = LocalStorage(str(tmp_path), retention=RetentionPolicy(max_count=1))

        assert RetentionManager().cleanup(backend) == 2
        assert sorted(p.name for p in tmp_path.iterdir()) == ['2024-01-17T00:00:00.zstd', 'notes.txt']


class TestEnforceAll:
    """Test enforce_all() and enforce_retention_policies()."""

    def test_summary(self, memory_storage):
        """Test per-kind counts and isolated failures."""
        s3 = memory_storage(kind=BackendKind.S3, retention=RetentionPolicy(max_count=1))
        s3.add('2024-01-19T12:00:00')
        s3.add('2024-01-18T12:00:00')
        local = memory_storage(retention=RetentionPolicy(max_count=1))
        local.fail_list = True

        summary = RetentionManager().enforce_all([s3, local])

        assert summary['backends_processed'] == 1
        assert summary['deleted'] == {'s3': 1}
        assert len(summary['errors']) == 1
        assert 'memory-local' in summary['errors'][0]
        assert summary['logs']

    @patch('pgbackup.backup.retention.build_backends')
    def test_enforce_retention_policies(self, mock_build, memory_storage):
        """Test the settings-level entry point builds backends."""
        backend = memory_storage(retention=RetentionPolicy(max_count=1))
        backend.add('2024-01-19T12:00:00')
        backend.add('2024-01-18T12:00:00')
        mock_build.return_value = [backend]
        settings = Settings(local=LocalSettings(directory='/unused'))

        summary = enforce_retention_policies(settings)

        mock_build.assert_called_once_with(settings)
        assert summary['deleted'] == {'local': 1}
