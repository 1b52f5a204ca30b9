"""
pg_dump / pg_restore process wrappers.

DumpProcess is a readable byte source over pg_dump's stdout.
RestoreProcess is a writable byte sink into pg_restore's stdin.

Both move through CREATED -> STARTED -> EXITED. Pipes are opened by start()
and closed by wait() on every path, including failures. The database
password is handed to the child as PGPASSWORD, never on the command line.
"""

import logging
import os
import subprocess
import threading
from enum import Enum
from typing import Optional, List, Dict

from pgbackup.settings import PostgresSettings


logger = logging.getLogger(__name__)

MAINTENANCE_DATABASE = 'postgres'

_DRAIN_CHUNK = 64 * 1024


class ProcessError(Exception):
    """Base class for pg_dump/pg_restore process failures."""
    pass


class ProcessLaunchError(ProcessError):
    """Raised when the executable cannot be spawned."""
    pass


class NotStartedError(ProcessError):
    """Raised when reading or writing a process that is not running."""
    pass


class ProcessCancelledError(ProcessError):
    """Raised by wait() when the process was killed through its cancel event."""
    pass


class ProcessExitError(ProcessError):
    """Raised by wait() when the process exits with a non-zero status."""

    def __init__(self, command: str, returncode: int, stderr: str = ''):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        message = f"{command} exited with status {returncode}"
        if stderr:
            message = f"{message}\n{command} stderr: {stderr.strip()}"
        super().__init__(message)


class ProcessState(Enum):
    CREATED = 'created'
    STARTED = 'started'
    EXITED = 'exited'


def connection_arguments(postgres: PostgresSettings) -> List[str]:
    """--host/--port/--username flags shared by pg_dump and pg_restore."""
    arguments = ['--host', postgres.host]

    if postgres.port is not None:
        arguments.extend(['--port', str(postgres.port)])

    if postgres.user is not None:
        arguments.extend(['--username', postgres.user])

    return arguments


def dump_arguments(postgres: PostgresSettings) -> List[str]:
    """
    Build pg_dump arguments.

    Returns:
        ['--format', 'custom', '--host', h, ['--port', p], ['--username', u], ['--dbname', d]]
    """
    arguments = ['--format', 'custom'] + connection_arguments(postgres)

    if postgres.database is not None:
        arguments.extend(['--dbname', postgres.database])

    return arguments


def restore_arguments(postgres: PostgresSettings, target_database: str) -> List[str]:
    """
    Build pg_restore arguments for restoring into `target_database`.

    pg_restore runs with --clean --create, so it connects to a maintenance
    database and recreates the target from there. The maintenance database
    is 'postgres', or the configured database when restoring elsewhere.
    """
    arguments = [
        '--format', 'custom',
        '--host', postgres.host,
        '--clean',
        '--create',
        '--exit-on-error',
        '--no-owner',
        '--no-privileges',
        '--verbose',
    ]

    if postgres.port is not None:
        arguments.extend(['--port', str(postgres.port)])

    if postgres.user is not None:
        arguments.extend(['--username', postgres.user])

    maintenance_db = MAINTENANCE_DATABASE
    if postgres.database is not None and postgres.database != target_database:
        maintenance_db = postgres.database
    arguments.extend(['--dbname', maintenance_db])

    return arguments


def process_environment(postgres: PostgresSettings) -> Dict[str, str]:
    """Child environment: the current environment plus PGPASSWORD when set."""
    env = os.environ.copy()
    if postgres.password is not None:
        env['PGPASSWORD'] = postgres.password
    return env


class ManagedProcess:
    """
    One invocation of an external executable with an explicit lifecycle.

    Subclasses choose which standard streams are piped and which of them
    are drained on background threads.
    """

    stdin_mode = subprocess.DEVNULL
    drained_streams = ('stderr',)

    def __init__(self, executable: str, arguments: List[str], env: Dict[str, str]):
        self.executable = executable
        self.arguments = arguments
        self.env = env
        self.state = ProcessState.CREATED
        self.returncode = None
        self.output = {}
        self._process = None
        self._drains = []
        self._cancelled = threading.Event()

    @property
    def name(self) -> str:
        return os.path.basename(self.executable)

    @property
    def command(self) -> List[str]:
        return [self.executable] + self.arguments

    def start(self, cancel_event: Optional[threading.Event] = None):
        """
        Spawn the process.

        Args:
            cancel_event: Optional event; setting it kills the process

        Raises:
            ProcessLaunchError: If the executable cannot be spawned
            ProcessError: If the process was already started
        """
        if self.state is not ProcessState.CREATED:
            raise ProcessError(f"{self.name} process already {self.state.value}")

        logger.info(f"Starting {self.name}: {' '.join(self.command)}")

        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=self.stdin_mode,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.env
            )
        except OSError as e:
            raise ProcessLaunchError(f"Failed to start {self.name}: {e}")

        self.state = ProcessState.STARTED

        for stream_name in self.drained_streams:
            drain = threading.Thread(
                target=self._drain,
                args=(stream_name, getattr(self._process, stream_name)),
                name=f'{self.name}-{stream_name}',
                daemon=True
            )
            drain.start()
            self._drains.append(drain)

        if cancel_event is not None:
            watcher = threading.Thread(
                target=self._watch_cancel,
                args=(cancel_event,),
                name=f'{self.name}-cancel',
                daemon=True
            )
            watcher.start()

    def kill(self):
        """Kill the process if it is still running."""
        if self.state is ProcessState.STARTED and self._process.poll() is None:
            logger.warning(f"Killing {self.name} (pid {self._process.pid})")
            self._process.kill()

    def wait(self) -> int:
        """
        Wait for the process to exit and release its pipes.

        Returns:
            Exit status (0)

        Raises:
            NotStartedError: If start() was never called
            ProcessCancelledError: If the process was killed by its cancel event
            ProcessExitError: If the process exited with a non-zero status
        """
        if self.state is ProcessState.CREATED:
            raise NotStartedError(f"{self.name} process is not started yet")

        if self.state is ProcessState.EXITED:
            return self.returncode

        try:
            self._before_wait()
            self.returncode = self._process.wait()
            for drain in self._drains:
                drain.join()
        finally:
            self._close_pipes()
            self.state = ProcessState.EXITED

        stdout = self.output.get('stdout', '')
        stderr = self.output.get('stderr', '')

        if stdout:
            logger.debug(f"{self.name} stdout: {stdout}")

        if self._cancelled.is_set():
            raise ProcessCancelledError(f"{self.name} was cancelled")

        if self.returncode != 0:
            if stderr:
                logger.error(f"{self.name} error output: {stderr}")
            raise ProcessExitError(self.name, self.returncode, stderr)

        if stderr:
            logger.debug(f"{self.name} stderr: {stderr}")

        return self.returncode

    def _require_running(self):
        if self.state is ProcessState.CREATED:
            raise NotStartedError(f"{self.name} process is not started yet")
        if self.state is ProcessState.EXITED:
            raise ProcessError(f"{self.name} process has already exited")

    def _before_wait(self):
        pass

    def _drain(self, stream_name: str, pipe):
        chunks = []
        try:
            for chunk in iter(lambda: pipe.read(_DRAIN_CHUNK), b''):
                chunks.append(chunk)
        except (OSError, ValueError) as e:
            logger.debug(f"{self.name} {stream_name} drain stopped: {e}")
        finally:
            self.output[stream_name] = b''.join(chunks).decode('utf-8', errors='replace')

    def _watch_cancel(self, cancel_event: threading.Event):
        while self._process.poll() is None:
            if cancel_event.wait(0.2):
                if self._process.poll() is None:
                    self._cancelled.set()
                    logger.warning(f"Cancellation requested, killing {self.name} (pid {self._process.pid})")
                    self._process.kill()
                return

    def _close_pipes(self):
        for pipe in (self._process.stdin, self._process.stdout, self._process.stderr):
            if pipe is None:
                continue
            try:
                pipe.close()
            except OSError:
                pass


class DumpProcess(ManagedProcess):
    """pg_dump in custom archive format, read through read()."""

    def __init__(self, postgres: PostgresSettings):
        super().__init__(
            postgres.dump_binary,
            dump_arguments(postgres),
            process_environment(postgres)
        )
        self.database = postgres.database

    def read(self, size: int = -1) -> bytes:
        """
        Read dump bytes from pg_dump's stdout.

        Raises:
            NotStartedError: If the process has not been started
        """
        self._require_running()
        return self._process.stdout.read(size)

    def readable(self) -> bool:
        return True


class RestoreProcess(ManagedProcess):
    """pg_restore reading a custom-format archive from write()."""

    stdin_mode = subprocess.PIPE
    drained_streams = ('stdout', 'stderr')

    def __init__(self, postgres: PostgresSettings, target_database: str):
        super().__init__(
            postgres.restore_binary,
            restore_arguments(postgres, target_database),
            process_environment(postgres)
        )
        self.target_database = target_database

    def write(self, data: bytes) -> int:
        """
        Send archive bytes to pg_restore's stdin.

        Raises:
            NotStartedError: If the process has not been started
        """
        self._require_running()
        self._process.stdin.write(data)
        return len(data)

    def _before_wait(self):
        # EOF on stdin tells pg_restore the archive is complete
        try:
            self._process.stdin.close()
        except OSError as e:
            logger.debug(f"{self.name} stdin close failed: {e}")
