"""
Streaming compression for database dumps.

Supports:
- zstd: Zstandard (via the zstandard library)
- gzip: Standard gzip

compress() wraps a readable stream and encodes it on a background thread
while the caller reads the compressed side, so the dump is never held in
memory. decompress() picks the decoder from the backup name suffix.
"""

import gzip
import io
import logging
import queue
import threading
from typing import Optional, BinaryIO

import zstandard


logger = logging.getLogger(__name__)

ALGORITHM_ZSTD = 'zstd'
ALGORITHM_GZIP = 'gzip'

SUPPORTED_ALGORITHMS = (ALGORITHM_ZSTD, ALGORITHM_GZIP)

CHUNK_SIZE = 64 * 1024

# Maximum number of encoded chunks waiting for the consumer
QUEUE_DEPTH = 16


class CompressionError(Exception):
    """Raised when a stream cannot be compressed or decompressed."""
    pass


class UnsupportedAlgorithmError(CompressionError):
    """Raised when an unknown compression algorithm is requested."""
    pass


class DecodeInitError(CompressionError):
    """Raised when a decoder cannot be created for a backup stream."""
    pass


_END = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class _Abandoned(Exception):
    pass


class _QueueSink:
    """Write-only file object that forwards encoded bytes to the consumer queue."""

    def __init__(self, owner: 'CompressedStream'):
        self._owner = owner

    def write(self, data) -> int:
        if data:
            self._owner._put(bytes(data))
        return len(data)

    def flush(self):
        pass


class CompressedStream(io.RawIOBase):
    """
    Readable stream over the compressed form of `source`.

    A producer thread reads `source`, encodes it and pushes chunks into a
    bounded queue; read() consumes them. An error raised while reading
    `source` or encoding is re-raised from read().
    """

    def __init__(self, source: BinaryIO, algorithm: str, level: int):
        super().__init__()
        self.algorithm = algorithm
        self.level = level
        self._source = source
        self._queue = queue.Queue(maxsize=QUEUE_DEPTH)
        self._pending = b''
        self._finished = False
        self._abandoned = threading.Event()
        self.bytes_in = 0
        self.bytes_out = 0

        if algorithm == ALGORITHM_ZSTD:
            try:
                self._compressor = zstandard.ZstdCompressor(level=level)
            except (zstandard.ZstdError, ValueError) as e:
                raise CompressionError(f"Invalid zstd compression level {level}: {e}")
        else:
            self._compressor = None

        self._thread = threading.Thread(
            target=self._produce,
            name=f'compress-{algorithm}',
            daemon=True
        )
        self._thread.start()

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            if self._finished:
                return 0

            item = self._queue.get()

            if item is _END:
                self._finished = True
                self._thread.join()
                return 0

            if isinstance(item, _Failure):
                self._finished = True
                self._thread.join()
                raise item.error

            self._pending = item

        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        self.bytes_out += size
        return size

    def close(self):
        if not self.closed:
            self._abandoned.set()
            # Unblock a producer waiting on a full queue
            while self._thread.is_alive():
                try:
                    self._queue.get(timeout=0.1)
                except queue.Empty:
                    pass
        super().close()

    def _put(self, item):
        while True:
            if self._abandoned.is_set():
                raise _Abandoned()
            try:
                self._queue.put(item, timeout=0.1)
                return
            except queue.Full:
                continue

    def _open_encoder(self, sink: _QueueSink):
        if self.algorithm == ALGORITHM_ZSTD:
            return self._compressor.stream_writer(sink, closefd=False)
        return gzip.GzipFile(fileobj=sink, mode='wb', compresslevel=self.level)

    def _produce(self):
        sink = _QueueSink(self)
        try:
            encoder = self._open_encoder(sink)
            while True:
                chunk = self._source.read(CHUNK_SIZE)
                if not chunk:
                    break
                self.bytes_in += len(chunk)
                encoder.write(chunk)
            encoder.close()
            self._put(_END)
        except _Abandoned:
            logger.debug(f"{self.algorithm} compression stopped: consumer closed the stream")
        except Exception as e:
            logger.error(f"{self.algorithm} compression failed after {self.bytes_in} input bytes: {e}")
            try:
                self._put(_Failure(e))
            except _Abandoned:
                pass


def compress(stream: BinaryIO, algorithm: str, level: int) -> CompressedStream:
    """
    Compress a stream lazily.

    Args:
        stream: Readable binary stream (e.g. a running pg_dump)
        algorithm: 'zstd' or 'gzip'
        level: Compression level for the algorithm

    Returns:
        Readable stream of compressed bytes

    Raises:
        UnsupportedAlgorithmError: If the algorithm is unknown
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise UnsupportedAlgorithmError(
            f"Unsupported compression algorithm: {algorithm}. "
            f"Valid options: {list(SUPPORTED_ALGORITHMS)}"
        )

    return CompressedStream(stream, algorithm, level)


def extension_for(algorithm: Optional[str]) -> str:
    """Name suffix for backups written with `algorithm` ('' when uncompressed)."""
    if not algorithm:
        return ''
    return f".{algorithm}"


def detect_algorithm(filename: str) -> Optional[str]:
    """
    Detect the compression algorithm from a backup name.

    Args:
        filename: Backup name or path

    Returns:
        'zstd', 'gzip', or None for an uncompressed backup
    """
    for algorithm in SUPPORTED_ALGORITHMS:
        if filename.endswith(extension_for(algorithm)):
            return algorithm
    return None


def decompress(stream: BinaryIO, filename_hint: str) -> BinaryIO:
    """
    Wrap a backup stream with the decoder matching its name.

    The decoder is chosen only from the suffix of `filename_hint`, so a
    backup written with gzip is restored with gzip whatever the current
    compression settings are.

    Args:
        stream: Readable stream of stored bytes
        filename_hint: Backup name, e.g. '2024-01-15T10:30:00.gzip'

    Returns:
        Readable stream of decompressed bytes, or `stream` itself when the
        name carries no compression suffix

    Raises:
        DecodeInitError: If the decoder cannot be created
    """
    algorithm = detect_algorithm(filename_hint)

    if algorithm is None:
        return stream

    try:
        if algorithm == ALGORITHM_ZSTD:
            return zstandard.ZstdDecompressor().stream_reader(stream, read_across_frames=True)
        return gzip.GzipFile(fileobj=stream, mode='rb')
    except (zstandard.ZstdError, OSError, ValueError) as e:
        raise DecodeInitError(f"Failed to initialize {algorithm} decoder for {filename_hint}: {e}")
