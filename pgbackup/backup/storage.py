"""
Storage backends for database dumps.

Supports:
- S3Storage: Any S3-compatible object store (via boto3)
- LocalStorage: A directory on the local filesystem

Every backend stores one object per backup, named after the upload time:
YYYY-MM-DDTHH:MM:SS, plus .<algorithm> when the stream is compressed.
Listings only return objects whose name starts with that timestamp, so
unrelated files sharing the bucket prefix or directory are ignored.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, List, BinaryIO, Tuple

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from pgbackup.settings import RetentionPolicy, Settings


logger = logging.getLogger(__name__)

BACKUP_NAME_FORMAT = '%Y-%m-%dT%H:%M:%S'
_BACKUP_NAME_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}')


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class UploadError(StorageError):
    """Raised when a backup cannot be written to a backend."""
    pass


class DeleteError(StorageError):
    """Raised when a backup cannot be removed from a backend."""
    pass


class BackendKind(Enum):
    S3 = 's3'
    LOCAL = 'local'


@dataclass(frozen=True)
class BackupEntry:
    """A stored backup as reported by a backend listing."""

    name: str
    key: str
    backend: BackendKind
    size: int
    last_modified: datetime
    parsed_timestamp: Optional[datetime] = None

    @property
    def identity(self) -> Tuple[BackendKind, str]:
        return (self.backend, self.key)


def backup_name(timestamp: datetime, algorithm: Optional[str] = None) -> str:
    """
    Generate the object name for a backup taken at `timestamp`.

    Args:
        timestamp: Upload time
        algorithm: Compression algorithm, or None for an uncompressed dump

    Returns:
        Name such as '2024-01-15T10:30:00.zstd'
    """
    name = timestamp.strftime(BACKUP_NAME_FORMAT)
    if algorithm:
        name = f"{name}.{algorithm}"
    return name


def is_backup_name(name: str) -> bool:
    """Check whether a file/object name follows the backup naming convention."""
    return len(name) >= 19 and _BACKUP_NAME_PATTERN.match(name) is not None


def parse_backup_timestamp(name: str) -> Optional[datetime]:
    """
    Parse the upload time encoded in a backup name.

    Names that do not follow the convention return None; callers fall back
    to the modification time reported by the backend.
    """
    if not is_backup_name(name):
        return None
    try:
        return datetime.strptime(name[:19], BACKUP_NAME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class StorageBackend:
    """
    Common interface of all storage backends.

    Subclasses implement upload, list_backups, download, delete and
    test_connection.
    """

    kind: BackendKind = None

    def __init__(self, retention: Optional[RetentionPolicy] = None, compression: Optional[str] = None):
        self.retention = retention or RetentionPolicy()
        self.compression = compression

    @property
    def label(self) -> str:
        """Human readable location used in log messages."""
        raise NotImplementedError

    def upload(self, stream: BinaryIO, name: Optional[str] = None) -> BackupEntry:
        raise NotImplementedError

    def list_backups(self) -> List[BackupEntry]:
        raise NotImplementedError

    def download(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def delete(self, key: str):
        raise NotImplementedError

    def test_connection(self) -> bool:
        raise NotImplementedError

    def backup_name_at(self, timestamp: datetime) -> str:
        """Object name this backend gives a backup taken at `timestamp`."""
        return backup_name(timestamp, self.compression)

    def _new_backup_name(self) -> str:
        return self.backup_name_at(datetime.now(timezone.utc))

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.label}>'


class S3Storage(StorageBackend):
    """
    Handler for storing backups in an S3-compatible bucket.

    Objects are stored as {prefix}/{name} when a prefix is configured,
    otherwise at the bucket root.
    """

    kind = BackendKind.S3

    def __init__(
        self,
        bucket_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        prefix: Optional[str] = None,
        retention: Optional[RetentionPolicy] = None,
        compression: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: Access key ID (None to use the default credential chain)
            secret_key: Secret access key
            region: Bucket region
            endpoint_url: Custom endpoint for S3-compatible services (MinIO, R2, ...)
            prefix: Key prefix that scopes uploads and listings
            retention: Retention policy for this bucket
            compression: Compression algorithm appended to new object names
        """
        super().__init__(retention=retention, compression=compression)
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/') if prefix else None

        try:
            self.s3_client = boto3.client(
                's3',
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @property
    def label(self) -> str:
        if self.prefix:
            return f"s3://{self.bucket_name}/{self.prefix}"
        return f"s3://{self.bucket_name}"

    def _object_key(self, name: str) -> str:
        if self.prefix:
            return f"{self.prefix}/{name}"
        return name

    def upload(self, stream: BinaryIO, name: Optional[str] = None) -> BackupEntry:
        """
        Upload a backup stream to S3.

        The stream length is not known in advance, so boto3's managed
        transfer is used; it switches to multipart upload for large dumps.

        Args:
            stream: Readable binary stream
            name: Backup name (defaults to one generated from the current time)

        Returns:
            BackupEntry for the stored object

        Raises:
            UploadError: If upload fails
        """
        key = self._object_key(name or self._new_backup_name())

        logger.info(f"Uploading backup to {self.label} (key: {key})")

        try:
            self.s3_client.upload_fileobj(stream, self.bucket_name, key)
            head = self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"S3 upload failed: {e}")

        entry = self._entry(key, head['ContentLength'], head['LastModified'])
        logger.info(f"Backup uploaded to {self.label}: {key} ({entry.size} bytes)")
        return entry

    def list_backups(self) -> List[BackupEntry]:
        """
        List backups under the configured prefix, newest first.

        Returns:
            List of BackupEntry sorted by last modified time (descending)

        Raises:
            StorageError: If listing fails
        """
        list_prefix = f"{self.prefix}/" if self.prefix else ''
        entries = []

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=list_prefix):
                for obj in page.get('Contents', []):
                    key = obj['Key']
                    if key.endswith('/'):
                        continue
                    if not is_backup_name(key.rsplit('/', 1)[-1]):
                        continue
                    entries.append(self._entry(key, obj['Size'], obj['LastModified']))

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

        entries.sort(key=lambda entry: entry.last_modified, reverse=True)
        return entries

    def download(self, key: str) -> BinaryIO:
        """
        Open a stored backup for streaming.

        Args:
            key: S3 object key

        Returns:
            Readable stream over the object body (caller closes it)

        Raises:
            StorageError: If the object cannot be fetched
        """
        logger.info(f"Downloading backup from {self.label} (key: {key})")

        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

        logger.info(f"Started download of {key} ({response.get('ContentLength', 0)} bytes)")
        return response['Body']

    def delete(self, key: str):
        """
        Delete an object from S3.

        Args:
            key: S3 object key to delete

        Raises:
            DeleteError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DeleteError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise DeleteError(f"Failed to delete from S3: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def _entry(self, key: str, size: int, last_modified: datetime) -> BackupEntry:
        name = key.rsplit('/', 1)[-1]
        if last_modified.tzinfo is None:
            last_modified = last_modified.replace(tzinfo=timezone.utc)
        return BackupEntry(
            name=name,
            key=key,
            backend=self.kind,
            size=size,
            last_modified=last_modified,
            parsed_timestamp=parse_backup_timestamp(name)
        )


class LocalStorage(StorageBackend):
    """
    Handler for storing backups in a local directory.

    Backups are flat files in the directory; keys are full file paths.
    """

    kind = BackendKind.LOCAL

    def __init__(
        self,
        directory: str,
        retention: Optional[RetentionPolicy] = None,
        compression: Optional[str] = None
    ):
        """
        Initialize local storage handler.

        Args:
            directory: Directory that holds the backups
            retention: Retention policy for this directory
            compression: Compression algorithm appended to new file names
        """
        super().__init__(retention=retention, compression=compression)
        self.directory = Path(directory)

    @property
    def label(self) -> str:
        return str(self.directory)

    def upload(self, stream: BinaryIO, name: Optional[str] = None) -> BackupEntry:
        """
        Write a backup stream to the directory.

        Args:
            stream: Readable binary stream
            name: Backup name (defaults to one generated from the current time)

        Returns:
            BackupEntry for the written file

        Raises:
            UploadError: If the file cannot be written
        """
        dest_path = self.directory / (name or self._new_backup_name())

        logger.info(f"Writing backup to {dest_path}")

        try:
            self.directory.mkdir(parents=True, exist_ok=True)

            with open(dest_path, 'wb') as f:
                shutil.copyfileobj(stream, f)

            stat = dest_path.stat()

        except OSError as e:
            self._remove_partial(dest_path)
            if isinstance(e, PermissionError):
                raise UploadError(f"Permission denied writing to {dest_path}: {e}")
            raise UploadError(f"Failed to store locally: {e}")
        except Exception:
            # Source stream failures (decoder, compressor, pg_dump) keep their type
            self._remove_partial(dest_path)
            raise

        entry = self._entry(dest_path, stat)
        logger.info(f"Backup written to {dest_path} ({entry.size} bytes)")
        return entry

    def list_backups(self) -> List[BackupEntry]:
        """
        List backup files in the directory, newest first.

        Returns:
            List of BackupEntry sorted by modification time (descending)

        Raises:
            StorageError: If the directory cannot be read
        """
        if not self.directory.exists():
            return []

        entries = []

        try:
            for file_path in self.directory.iterdir():
                if not file_path.is_file() or not is_backup_name(file_path.name):
                    continue
                try:
                    stat = file_path.stat()
                except OSError:
                    # File removed between listing and stat
                    continue
                entries.append(self._entry(file_path, stat))

        except OSError as e:
            raise StorageError(f"Failed to list local files in {self.directory}: {e}")

        entries.sort(key=lambda entry: entry.last_modified, reverse=True)
        return entries

    def download(self, key: str) -> BinaryIO:
        """
        Open a local backup file for reading.

        Args:
            key: Full path of the backup file

        Returns:
            Open binary file (caller closes it)

        Raises:
            StorageError: If the file is missing or unreadable
        """
        path = Path(key)

        if not path.exists():
            raise StorageError(f"Backup file not found: {key}")
        if path.is_dir():
            raise StorageError(f"Backup path is a directory, not a file: {key}")

        try:
            f = open(path, 'rb')
        except OSError as e:
            raise StorageError(f"Failed to open backup file {key}: {e}")

        logger.info(f"Opened local backup {key} ({os.fstat(f.fileno()).st_size} bytes)")
        return f

    def delete(self, key: str):
        """
        Delete a file from local storage.

        Args:
            key: Full path of the file to delete

        Raises:
            DeleteError: If deletion fails
        """
        path = Path(key)

        try:
            if path.exists():
                path.unlink()
        except PermissionError as e:
            raise DeleteError(f"Permission denied deleting {path}: {e}")
        except OSError as e:
            raise DeleteError(f"Failed to delete local file: {e}")

    def test_connection(self) -> bool:
        """
        Check the backup directory can be written.

        A missing directory is fine as long as it can be created on the
        first upload.

        Returns:
            True if the directory (or its nearest existing parent) is writable

        Raises:
            StorageError: If the directory cannot be used
        """
        path = self.directory
        while not path.exists() and path != path.parent:
            path = path.parent

        if not path.is_dir():
            raise StorageError(f"Backup path is not a directory: {path}")
        if not os.access(path, os.W_OK | os.X_OK):
            raise StorageError(f"Backup directory is not writable: {path}")
        return True

    def _remove_partial(self, path: Path):
        try:
            if path.exists():
                path.unlink()
                logger.info(f"Removed partial backup {path}")
        except OSError as e:
            logger.warning(f"Failed to remove partial backup {path}: {e}")

    def _entry(self, path: Path, stat: os.stat_result) -> BackupEntry:
        return BackupEntry(
            name=path.name,
            key=str(path),
            backend=self.kind,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            parsed_timestamp=parse_backup_timestamp(path.name)
        )


def build_backends(settings: Settings) -> List[StorageBackend]:
    """
    Create a backend for every storage target in the settings.

    Args:
        settings: Loaded settings

    Returns:
        Backends in fixed order: S3 first, then local
    """
    backends = []
    algorithm = settings.compression_algorithm

    if settings.s3 is not None:
        backends.append(S3Storage(
            bucket_name=settings.s3.bucket,
            access_key=settings.s3.access_key,
            secret_key=settings.s3.secret_key,
            region=settings.s3.region,
            endpoint_url=settings.s3.endpoint_url,
            prefix=settings.s3.prefix,
            retention=settings.s3.retention,
            compression=algorithm
        ))

    if settings.local is not None:
        backends.append(LocalStorage(
            directory=settings.local.directory,
            retention=settings.local.retention,
            compression=algorithm
        ))

    return backends
