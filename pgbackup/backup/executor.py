"""
Backup and restore executors - orchestrate the complete workflows.

Backup workflow:
1. Start pg_dump
2. Compress the dump stream (if configured)
3. Upload to every configured backend
4. Wait for pg_dump and check its exit status
5. Apply retention on backends that received the backup

Restore workflow:
1. Select a backup from the merged catalog
2. Download it from its backend
3. Decompress based on the backup name
4. Stream it into pg_restore and wait for completion
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from pgbackup.settings import Settings, RestoreScheduleEntry
from .catalog import merged_catalog, select_backup, select_latest, select_by_specific_id
from .compression import compress, decompress, CHUNK_SIZE
from .distributor import BackupDistributor, UploadOutcome
from .process import DumpProcess, RestoreProcess, ProcessError, ProcessState
from .retention import RetentionManager
from .storage import BackupEntry, DeleteError, StorageBackend, StorageError, build_backends


logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a backup run cannot store the dump anywhere."""
    pass


class NoSuitableBackupError(Exception):
    """Raised when no stored backup matches a restore selection."""
    pass


class BackupStage(Enum):
    IDLE = 'idle'
    DUMPING = 'dumping'
    COMPRESSING = 'compressing'
    DISTRIBUTING = 'distributing'
    RETENTION = 'retention'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class BackupResult:
    """Outcome of one backup run."""

    status: str = 'running'
    stage: BackupStage = BackupStage.IDLE
    failed_stage: Optional[BackupStage] = None
    outcomes: List[UploadOutcome] = field(default_factory=list)
    error: Optional[Exception] = None
    logs: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status in ('success', 'partial')

    @property
    def stored(self) -> List[BackupEntry]:
        return [outcome.entry for outcome in self.outcomes if outcome.succeeded]

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class _ExecutorLogMixin:

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


class BackupExecutor(_ExecutorLogMixin):
    """
    Runs one backup: pg_dump -> compression -> fan-out upload -> retention.

    Stages run in order without retries. The first failing stage moves the
    run to FAILED and later stages are skipped.
    """

    def __init__(
        self,
        settings: Settings,
        backends: Optional[List[StorageBackend]] = None,
        retention_manager: Optional[RetentionManager] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Loaded settings
            backends: Storage backends (built from settings when omitted)
            retention_manager: Retention manager used after upload
        """
        self.settings = settings
        self.backends = backends if backends is not None else build_backends(settings)
        self.retention_manager = retention_manager or RetentionManager()
        self.result = BackupResult()
        self.logs = self.result.logs
        self._stream = None

    def execute(self, cancel_event: Optional[threading.Event] = None) -> BackupResult:
        """
        Execute the backup.

        Args:
            cancel_event: Optional event that kills pg_dump when set

        Returns:
            BackupResult; failures are recorded on it rather than raised

        Raises:
            ConfigurationError: If no storage backend is configured
        """
        self.settings.require_storage()

        result = self.result
        result.started_at = datetime.now(timezone.utc)
        database = self.settings.database_name
        self._log(f"Starting backup of database: {database}")

        process = DumpProcess(self.settings.postgres)

        try:
            self._run(process, cancel_event)
        except Exception as e:
            result.failed_stage = result.stage
            result.stage = BackupStage.FAILED
            result.status = 'failed'
            result.error = e
            self._log(f"Backup of {database} failed during {result.failed_stage.value}: {e}", logging.ERROR)
        finally:
            self._release(process)
            result.completed_at = datetime.now(timezone.utc)

        return result

    def _run(self, process: DumpProcess, cancel_event: Optional[threading.Event]):
        result = self.result

        result.stage = BackupStage.DUMPING
        process.start(cancel_event)
        self._stream = process

        if self.settings.compress is not None:
            result.stage = BackupStage.COMPRESSING
            algorithm = self.settings.compress.algorithm
            level = self.settings.compress.level
            self._log(f"Compressing dump (algorithm: {algorithm}, level: {level})")
            self._stream = compress(process, algorithm, level)
        else:
            self._log("Compression not configured, storing raw dump")

        result.stage = BackupStage.DISTRIBUTING
        distributor = BackupDistributor(self.backends, self.retention_manager)
        self._log(f"Uploading to {len(self.backends)} backend(s)")
        distribution = distributor.upload_all(self._stream, timestamp=result.started_at)
        result.outcomes = distribution.outcomes

        for outcome in distribution.failed:
            self._log(f"Upload to {outcome.backend.label} failed: {outcome.error}", logging.ERROR)

        if not distribution.succeeded:
            raise BackupError(f"Backup could not be stored on any of {len(self.backends)} backend(s)")

        try:
            process.wait()
        except ProcessError as e:
            for outcome in distribution.succeeded:
                self._discard_incomplete(outcome, e)
            raise

        for entry in result.stored:
            self._log(f"Stored {entry.name} on {entry.backend.value}: {entry.key} ({entry.size} bytes)")

        result.stage = BackupStage.RETENTION
        distributor.apply_retention(distribution)

        result.stage = BackupStage.DONE
        result.status = 'success' if distribution.all_succeeded else 'partial'
        self._log(f"Backup completed with status: {result.status}")

    def _discard_incomplete(self, outcome: UploadOutcome, error: ProcessError):
        """Remove an upload of a dump that pg_dump did not finish."""
        key = outcome.entry.key
        try:
            outcome.backend.delete(key)
            self._log(f"Removed incomplete backup {key} from {outcome.backend.label}", logging.WARNING)
        except DeleteError as delete_error:
            self._log(
                f"Incomplete backup {key} could not be removed from {outcome.backend.label}: {delete_error}",
                logging.ERROR
            )
        outcome.error = error

    def _release(self, process: DumpProcess):
        """Stop pg_dump if it is still running and release its pipes."""
        stream = self._stream

        if process.state is not ProcessState.STARTED:
            if stream is not None and stream is not process:
                stream.close()
            return

        # A consumer that stopped early leaves pg_dump blocked on a full pipe
        process.kill()

        if stream is not None and stream is not process:
            stream.close()

        try:
            process.wait()
        except ProcessError as e:
            logger.debug(f"pg_dump ended after failed backup: {e}")


class RestoreExecutor(_ExecutorLogMixin):
    """
    Restores a stored backup into a database through pg_restore.
    """

    def __init__(self, settings: Settings, backends: Optional[List[StorageBackend]] = None):
        """
        Initialize restore executor.

        Args:
            settings: Loaded settings
            backends: Storage backends (built from settings when omitted)
        """
        self.settings = settings
        self.backends = backends if backends is not None else build_backends(settings)
        self.logs = []

    def restore(
        self,
        entry: BackupEntry,
        target_database: str,
        cancel_event: Optional[threading.Event] = None
    ) -> BackupEntry:
        """
        Restore one backup into `target_database`.

        Args:
            entry: Backup to restore
            target_database: Database to (re)create
            cancel_event: Optional event that kills pg_restore when set

        Returns:
            The restored backup

        Raises:
            StorageError: If the backup cannot be downloaded
            CompressionError: If the backup cannot be decoded
            ProcessError: If pg_restore fails
        """
        self.settings.require_storage()

        backend = self._backend_for(entry)
        self._log(f"Restoring {entry.name} from {backend.label} into database: {target_database}")

        source = backend.download(entry.key)
        stream = source

        try:
            stream = decompress(source, entry.name)
            process = RestoreProcess(self.settings.postgres, target_database)
            process.start(cancel_event)

            try:
                for chunk in iter(lambda: stream.read(CHUNK_SIZE), b''):
                    process.write(chunk)
            except Exception as e:
                self._log(f"Streaming {entry.name} into pg_restore failed: {e}", logging.ERROR)
                try:
                    process.wait()
                except ProcessError as secondary:
                    self._log(f"pg_restore after streaming failure: {secondary}", logging.ERROR)
                raise

            process.wait()
        finally:
            if stream is not source:
                stream.close()
            source.close()

        self._log(f"Restore of {entry.name} into {target_database} completed")
        return entry

    def scheduled_restore(self, schedule_entry: RestoreScheduleEntry) -> BackupEntry:
        """
        Run a restore schedule: select a backup and restore it.

        Raises:
            NoSuitableBackupError: If the selection matches no backup
        """
        catalog = merged_catalog(
            self.backends,
            include_s3=schedule_entry.include_s3,
            include_local=schedule_entry.include_local
        )

        entry = select_backup(
            catalog,
            schedule_entry.selection,
            pattern=schedule_entry.pattern,
            backup_id=schedule_entry.backup_id
        )

        if entry is None:
            raise NoSuitableBackupError(
                f"No backup matches selection '{schedule_entry.selection}' "
                f"for restore into {schedule_entry.target_database} "
                f"(searched {len(catalog)} backups)"
            )

        self._log(f"Selected {entry.name} ({entry.backend.value}) by '{schedule_entry.selection}'")
        return self.restore(entry, schedule_entry.target_database)

    def find_backup(
        self,
        reference: Optional[str] = 'latest',
        include_s3: bool = True,
        include_local: bool = True
    ) -> BackupEntry:
        """
        Resolve 'latest' or a backup id/substring to a stored backup.

        Raises:
            NoSuitableBackupError: If nothing matches
        """
        catalog = merged_catalog(self.backends, include_s3=include_s3, include_local=include_local)

        if not reference or reference == 'latest':
            entry = select_latest(catalog)
        else:
            entry = select_by_specific_id(catalog, reference)

        if entry is None:
            raise NoSuitableBackupError(f"No backup found matching '{reference or 'latest'}'")

        return entry

    def _backend_for(self, entry: BackupEntry) -> StorageBackend:
        for backend in self.backends:
            if backend.kind is entry.backend:
                return backend
        raise StorageError(f"No {entry.backend.value} backend configured for backup {entry.name}")


def execute_backup(settings: Settings, cancel_event: Optional[threading.Event] = None) -> BackupResult:
    """
    Run a backup with the configured backends.

    Returns:
        BackupResult with execution results
    """
    executor = BackupExecutor(settings)
    return executor.execute(cancel_event)


def execute_scheduled_restore(settings: Settings, schedule_entry: RestoreScheduleEntry) -> BackupEntry:
    """
    Run one configured restore schedule.

    Returns:
        The restored backup
    """
    executor = RestoreExecutor(settings)
    return executor.scheduled_restore(schedule_entry)
