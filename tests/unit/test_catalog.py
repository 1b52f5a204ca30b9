"""
Unit tests for backup catalog and selection (pgbackup/backup/catalog.py).
"""

from datetime import datetime, timezone

import pytest

from pgbackup.backup.catalog import (
    merged_catalog,
    select_backup,
    select_by_pattern,
    select_by_specific_id,
    select_latest
)
from pgbackup.backup.storage import BackendKind, StorageError


@pytest.fixture
def backends(memory_storage):
    """An S3 and a local backend holding interleaved backups."""
    s3 = memory_storage(kind=BackendKind.S3)
    s3.add('2024-01-15T03:00:00.zstd')
    s3.add('2024-01-17T03:00:00.zstd')
    local = memory_storage(kind=BackendKind.LOCAL)
    local.add('2024-01-16T03:00:00.zstd')
    local.add('2024-01-17T15:00:00.zstd')
    return [s3, local]


class TestMergedCatalog:
    """Test merged_catalog()."""

    def test_newest_first_across_backends(self, backends):
        """Test entries from all backends are interleaved by time."""
        catalog = merged_catalog(backends)

        assert [entry.name for entry in catalog] == [
            '2024-01-17T15:00:00.zstd',
            '2024-01-17T03:00:00.zstd',
            '2024-01-16T03:00:00.zstd',
            '2024-01-15T03:00:00.zstd'
        ]
        assert catalog[0].backend is BackendKind.LOCAL
        assert catalog[1].backend is BackendKind.S3

    def test_equal_times_keep_backend_order(self, memory_storage):
        """Test ties keep S3 entries ahead of local ones."""
        when = datetime(2024, 1, 15, 3, 0, tzinfo=timezone.utc)
        s3 = memory_storage(kind=BackendKind.S3)
        s3.add('2024-01-15T03:00:00.zstd', last_modified=when)
        local = memory_storage(kind=BackendKind.LOCAL)
        local.add('2024-01-15T03:00:00.zstd', last_modified=when)

        catalog = merged_catalog([s3, local])

        assert [entry.backend for entry in catalog] == [BackendKind.S3, BackendKind.LOCAL]

    def test_exclude_backends(self, backends):
        """Test include flags filter backends before listing."""
        backends[1].fail_list = True

        catalog = merged_catalog(backends, include_local=False)

        assert {entry.backend for entry in catalog} == {BackendKind.S3}
        assert merged_catalog(backends, include_s3=False, include_local=False) == []

    def test_listing_error_propagates(self, backends):
        """Test a requested backend that cannot be listed raises."""
        backends[0].fail_list = True

        with pytest.raises(StorageError):
            merged_catalog(backends)


class TestSelection:
    """Test selection strategies."""

    def test_latest(self, backends):
        """Test latest is the entry with the greatest modification time."""
        catalog = merged_catalog(backends)

        latest = select_latest(catalog)

        assert latest.name == '2024-01-17T15:00:00.zstd'
        assert latest.last_modified == max(entry.last_modified for entry in catalog)

    def test_latest_empty(self):
        """Test nothing to select from an empty catalog."""
        assert select_latest([]) is None

    def test_pattern_returns_newest_match(self, backends):
        """Test the first matching entry in catalog order wins."""
        catalog = merged_catalog(backends)

        assert select_by_pattern(catalog, 'T03:').name == '2024-01-17T03:00:00.zstd'
        assert select_by_pattern(catalog, '2024-01-15').backend is BackendKind.S3
        assert select_by_pattern(catalog, '2023') is None

    def test_specific_prefers_exact_match(self, memory_storage):
        """Test an exact name beats a newer substring match."""
        local = memory_storage()
        local.add('2024-01-15T03:00:00')
        local.add('2024-01-15T03:00:00.zstd', last_modified=datetime(2024, 2, 1, tzinfo=timezone.utc))
        catalog = merged_catalog([local])

        assert catalog[0].name == '2024-01-15T03:00:00.zstd'
        assert select_by_specific_id(catalog, '2024-01-15T03:00:00').name == '2024-01-15T03:00:00'

    def test_specific_falls_back_to_substring(self, backends):
        """Test an id without suffix still finds the backup."""
        catalog = merged_catalog(backends)

        assert select_by_specific_id(catalog, '2024-01-16T03:00:00').name == '2024-01-16T03:00:00.zstd'

    def test_select_backup_dispatch(self, backends):
        """Test select_backup() routes to each strategy."""
        catalog = merged_catalog(backends)

        assert select_backup(catalog, 'latest').name == '2024-01-17T15:00:00.zstd'
        assert select_backup(catalog, 'pattern', pattern='01-16').name == '2024-01-16T03:00:00.zstd'
        assert select_backup(catalog, 'specific', backup_id='2024-01-15T03:00:00.zstd').backend is BackendKind.S3

    def test_unknown_strategy(self):
        """Test unknown strategies are rejected."""
        with pytest.raises(ValueError, match='oldest'):
            select_backup([], 'oldest')

    def test_selection_does_not_mutate(self, backends):
        """Test selecting leaves the catalog untouched."""
        catalog = merged_catalog(backends)
        snapshot = list(catalog)

        select_backup(catalog, 'pattern', pattern='T15')

        assert catalog == snapshot
