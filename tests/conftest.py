"""
Shared pytest fixtures for pgbackup tests.

This module provides fixtures for:
- Settings with local and S3 storage
- Flask app, test client and CLI runner
- In-memory storage backends
- Fake pg_dump / pg_restore executables
- Mock fixtures for external services (S3)
"""

import io
import stat
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from pgbackup import create_app
from pgbackup.settings import (
    Settings,
    PostgresSettings,
    LocalSettings,
    S3Settings,
    CompressSettings,
    RetentionPolicy
)
from pgbackup.backup.storage import (
    BackendKind,
    BackupEntry,
    StorageBackend,
    UploadError,
    DeleteError,
    StorageError,
    parse_backup_timestamp
)


class MemoryStorage(StorageBackend):
    """
    Storage backend keeping backups in a dict.

    Seed it with add(); upload() names objects like the real backends.
    """

    def __init__(self, kind=BackendKind.LOCAL, retention=None, compression=None):
        super().__init__(retention=retention, compression=compression)
        self.kind = kind
        self.objects = {}
        self.fail_upload = False
        self.fail_list = False
        self.fail_delete = set()
        self.deleted = []

    @property
    def label(self):
        return f"memory-{self.kind.value}"

    def add(self, name, data=b'', last_modified=None):
        last_modified = last_modified or parse_backup_timestamp(name) or datetime.now(timezone.utc)
        self.objects[name] = (data, last_modified)
        return self._entry(name)

    def upload(self, stream, name=None):
        if self.fail_upload:
            raise UploadError(f"{self.label} upload failed")
        data = stream.read()
        return self.add(name or self._new_backup_name(), data)

    def list_backups(self):
        if self.fail_list:
            raise StorageError(f"{self.label} listing failed")
        entries = [self._entry(name) for name in self.objects]
        return sorted(entries, key=lambda e: e.last_modified, reverse=True)

    def download(self, key):
        if key not in self.objects:
            raise StorageError(f"Backup not found: {key}")
        return io.BytesIO(self.objects[key][0])

    def delete(self, key):
        if key in self.fail_delete:
            raise DeleteError(f"Failed to delete {key}")
        self.objects.pop(key, None)
        self.deleted.append(key)

    def test_connection(self):
        return True

    def _entry(self, name):
        data, last_modified = self.objects[name]
        return BackupEntry(
            name=name,
            key=name,
            backend=self.kind,
            size=len(data),
            last_modified=last_modified,
            parsed_timestamp=parse_backup_timestamp(name)
        )


@pytest.fixture
def memory_storage():
    """Factory for MemoryStorage backends."""
    def factory(kind=BackendKind.LOCAL, retention=None, compression=None):
        return MemoryStorage(kind=kind, retention=retention, compression=compression)
    return factory


DUMP_PAYLOAD = b'PGDMP-custom-archive-payload'


def _write_script(path, body):
    path.write_text('#!/bin/sh\n' + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_binaries(tmp_path):
    """
    Create fake pg_dump / pg_restore scripts.

    pg_dump prints DUMP_PAYLOAD and records its arguments and PGPASSWORD.
    pg_restore copies stdin to restored.bin and records its arguments.
    """
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()

    dump = _write_script(
        bin_dir / 'pg_dump',
        f'echo "$@" > "{tmp_path}/dump_args.txt"\n'
        f'echo "$PGPASSWORD" > "{tmp_path}/dump_password.txt"\n'
        'printf "PGDMP-custom-archive-payload"\n'
    )
    restore = _write_script(
        bin_dir / 'pg_restore',
        f'echo "$@" > "{tmp_path}/restore_args.txt"\n'
        f'cat > "{tmp_path}/restored.bin"\n'
        'echo "pg_restore: creating DATABASE"\n'
        'echo "pg_restore: processing item" >&2\n'
    )
    failing_dump = _write_script(
        bin_dir / 'pg_dump_fail',
        'printf "partial"\n'
        'echo "pg_dump: error: connection to server failed" >&2\n'
        'exit 1\n'
    )
    failing_restore = _write_script(
        bin_dir / 'pg_restore_fail',
        'cat > /dev/null\n'
        'echo "pg_restore: error: database \\"app\\" already exists" >&2\n'
        'exit 1\n'
    )
    slow_dump = _write_script(
        bin_dir / 'pg_dump_slow',
        'exec sleep 30\n'
    )

    return {
        'dump': dump,
        'restore': restore,
        'failing_dump': failing_dump,
        'failing_restore': failing_restore,
        'slow_dump': slow_dump,
        'payload': DUMP_PAYLOAD,
        'dir': tmp_path
    }


@pytest.fixture
def postgres_settings(fake_binaries):
    """Postgres connection pointing at the fake binaries."""
    return PostgresSettings(
        host='db.example.com',
        port=5432,
        user='backup',
        password='s3cret',
        database='app',
        dump_binary=fake_binaries['dump'],
        restore_binary=fake_binaries['restore']
    )


@pytest.fixture
def backup_dir(tmp_path):
    directory = tmp_path / 'backups'
    directory.mkdir()
    return directory


@pytest.fixture
def local_settings(postgres_settings, backup_dir):
    """Settings with local storage only and zstd compression."""
    return Settings(
        postgres=postgres_settings,
        local=LocalSettings(directory=str(backup_dir), retention=RetentionPolicy(max_count=3)),
        compress=CompressSettings(algorithm='zstd', level=3),
        schedule=('0 3 * * *',)
    )


@pytest.fixture
def s3_settings(postgres_settings, backup_dir):
    """Settings with S3 and local storage."""
    return Settings(
        postgres=postgres_settings,
        s3=S3Settings(
            bucket='test-bucket',
            access_key='test_access_key',
            secret_key='test_secret_key',
            region='us-east-1',
            prefix='app',
            retention=RetentionPolicy(max_age_days=30)
        ),
        local=LocalSettings(directory=str(backup_dir)),
        compress=CompressSettings(algorithm='gzip', level=6)
    )


@pytest.fixture(scope='function')
def app(local_settings):
    """
    Create Flask app with test configuration.

    The scheduler is not started; scheduler tests patch it explicitly.
    """
    app = create_app('testing', settings=local_settings, with_scheduler=False)
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('pgbackup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
