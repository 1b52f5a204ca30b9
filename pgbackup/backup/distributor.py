"""
Fan-out of one backup stream to every configured storage backend.

With a single backend the stream is uploaded directly. With several, the
stream is read into memory once and every backend gets its own reader over
the same bytes, so all backends store identical payloads.
"""

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, BinaryIO

from .retention import RetentionManager
from .storage import BackupEntry, StorageBackend


logger = logging.getLogger(__name__)


@dataclass
class UploadOutcome:
    """Result of uploading to (and cleaning up) one backend."""

    backend: StorageBackend
    entry: Optional[BackupEntry] = None
    error: Optional[Exception] = None
    retention_deleted: int = 0
    retention_error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.entry is not None


@dataclass
class DistributionResult:
    outcomes: List[UploadOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[UploadOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failed(self) -> List[UploadOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    @property
    def all_succeeded(self) -> bool:
        return bool(self.outcomes) and not self.failed


class BackupDistributor:
    """
    Uploads a backup stream to several backends with per-backend isolation.

    A failing backend is recorded in its UploadOutcome; the remaining
    backends are still attempted.
    """

    def __init__(self, backends: List[StorageBackend], retention_manager: Optional[RetentionManager] = None):
        self.backends = list(backends)
        self.retention_manager = retention_manager or RetentionManager()

    def upload_all(self, stream: BinaryIO, timestamp: Optional[datetime] = None) -> DistributionResult:
        """
        Upload `stream` to every backend.

        Every backend names the backup after the same `timestamp`, so one
        run stores the same name everywhere.

        Args:
            stream: Readable backup stream (consumed once)
            timestamp: Backup time (defaults to now)

        Returns:
            DistributionResult with one outcome per backend, in backend order
        """
        result = DistributionResult()
        timestamp = timestamp or datetime.now(timezone.utc)

        if len(self.backends) == 1:
            result.outcomes.append(self._upload(self.backends[0], stream, timestamp))
            return result

        payload = stream.read()
        logger.info(f"Buffered {len(payload)} bytes for {len(self.backends)} backends")

        for backend in self.backends:
            result.outcomes.append(self._upload(backend, io.BytesIO(payload), timestamp))

        return result

    def apply_retention(self, result: DistributionResult) -> DistributionResult:
        """
        Run retention for every backend whose upload succeeded.

        Retention failures are logged and recorded; they never mark the
        upload itself as failed.
        """
        for outcome in result.succeeded:
            if not outcome.backend.retention.enabled:
                continue
            try:
                outcome.retention_deleted = self.retention_manager.cleanup(outcome.backend)
            except Exception as e:
                outcome.retention_error = e
                logger.error(f"Retention cleanup failed for {outcome.backend.label}: {e}")

        return result

    def distribute(self, stream: BinaryIO, timestamp: Optional[datetime] = None) -> DistributionResult:
        """Upload to every backend, then apply retention where the upload succeeded."""
        return self.apply_retention(self.upload_all(stream, timestamp))

    def _upload(self, backend: StorageBackend, stream: BinaryIO, timestamp: datetime) -> UploadOutcome:
        try:
            entry = backend.upload(stream, backend.backup_name_at(timestamp))
            logger.info(f"Uploaded {entry.name} to {backend.label} ({entry.size} bytes)")
            return UploadOutcome(backend=backend, entry=entry)
        except Exception as e:
            logger.error(f"Upload to {backend.label} failed: {e}")
            return UploadOutcome(backend=backend, error=e)
