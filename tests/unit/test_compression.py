"""
Unit tests for streaming compression (pgbackup/backup/compression.py).

Tests zstd and gzip encoding, suffix based decoder selection and error
propagation from the source stream.
"""

import gzip
import io
import os
from unittest.mock import patch

import pytest
import zstandard

from pgbackup.backup.compression import (
    CompressionError,
    DecodeInitError,
    UnsupportedAlgorithmError,
    compress,
    decompress,
    detect_algorithm,
    extension_for
)


class FailingStream(io.RawIOBase):
    """Readable stream that fails after yielding some bytes."""

    def __init__(self, data: bytes):
        self._data = data
        self._sent = False

    def readable(self):
        return True

    def read(self, size=-1):
        if not self._sent:
            self._sent = True
            return self._data
        raise OSError('pg_dump pipe broke')


class TestCompress:
    """Test compress()."""

    @pytest.mark.parametrize('algorithm,level', [('zstd', 3), ('gzip', 6)])
    def test_round_trip(self, algorithm, level):
        """Test compress then decompress returns the original bytes."""
        payload = os.urandom(200_000) + b'PGDMP' * 10_000

        compressed = compress(io.BytesIO(payload), algorithm, level).read()
        restored = decompress(io.BytesIO(compressed), f'2024-01-15T10:30:00.{algorithm}').read()

        assert restored == payload

    def test_zstd_output_is_zstd(self):
        """Test zstd output decodes with the zstandard library."""
        compressed = compress(io.BytesIO(b'hello' * 1000), 'zstd', 3).read()

        reader = zstandard.ZstdDecompressor().stream_reader(io.BytesIO(compressed))
        assert reader.read() == b'hello' * 1000

    def test_gzip_output_is_gzip(self):
        """Test gzip output decodes with the gzip module."""
        compressed = compress(io.BytesIO(b'hello' * 1000), 'gzip', 6).read()

        assert gzip.decompress(compressed) == b'hello' * 1000

    def test_counts_bytes(self):
        """Test input and output byte counters."""
        stream = compress(io.BytesIO(b'a' * 100_000), 'zstd', 3)
        compressed = stream.read()

        assert stream.bytes_in == 100_000
        assert stream.bytes_out == len(compressed)
        assert len(compressed) < 100_000

    def test_empty_input(self):
        """Test an empty stream still yields a valid frame."""
        compressed = compress(io.BytesIO(b''), 'gzip', 6).read()

        assert gzip.decompress(compressed) == b''

    def test_unsupported_algorithm(self):
        """Test unknown algorithms are rejected."""
        with pytest.raises(UnsupportedAlgorithmError, match='lz4'):
            compress(io.BytesIO(b'data'), 'lz4', 1)

    def test_invalid_zstd_level(self):
        """Test an out of range zstd level is reported."""
        with pytest.raises(CompressionError):
            compress(io.BytesIO(b'data'), 'zstd', 1000)

    @pytest.mark.parametrize('algorithm', ['zstd', 'gzip'])
    def test_source_error_propagates(self, algorithm):
        """Test a failing source surfaces as an error, not a truncated stream."""
        stream = compress(FailingStream(b'partial dump'), algorithm, 3)

        with pytest.raises(OSError, match='pg_dump pipe broke'):
            stream.read()

    def test_close_before_consuming(self):
        """Test closing early stops the producer thread."""
        stream = compress(io.BytesIO(os.urandom(2_000_000)), 'zstd', 1)
        stream.read(10)

        stream.close()

        assert stream.closed
        assert not stream._thread.is_alive()


class TestDecompress:
    """Test decompress() and suffix detection."""

    def test_gzip_selected_by_suffix_only(self):
        """Test a .gzip backup is decoded with gzip whatever else is configured."""
        payload = b'custom archive bytes'
        stored = io.BytesIO(gzip.compress(payload))

        assert decompress(stored, '2024-01-15T10:30:00.gzip').read() == payload

    def test_no_suffix_returns_stream(self):
        """Test uncompressed backups pass through unchanged."""
        stream = io.BytesIO(b'raw')

        assert decompress(stream, '2024-01-15T10:30:00') is stream

    def test_corrupt_gzip_fails_on_read(self):
        """Test invalid data is reported when read."""
        stream = decompress(io.BytesIO(b'not gzip at all'), '2024-01-15T10:30:00.gzip')

        with pytest.raises(OSError):
            stream.read()

    @patch('pgbackup.backup.compression.gzip.GzipFile')
    def test_decoder_init_failure(self, mock_gzip):
        """Test decoder construction errors raise DecodeInitError."""
        mock_gzip.side_effect = OSError('bad header')

        with pytest.raises(DecodeInitError, match='gzip'):
            decompress(io.BytesIO(b'x'), '2024-01-15T10:30:00.gzip')

    @pytest.mark.parametrize('filename,algorithm', [
        ('2024-01-15T10:30:00.zstd', 'zstd'),
        ('2024-01-15T10:30:00.gzip', 'gzip'),
        ('/data/backups/2024-01-15T10:30:00.gzip', 'gzip'),
        ('2024-01-15T10:30:00', None),
        ('2024-01-15T10:30:00.gz', None),
    ])
    def test_detect_algorithm(self, filename, algorithm):
        """Test suffix detection."""
        assert detect_algorithm(filename) == algorithm

    def test_extension_for(self):
        """Test suffixes written by compress settings."""
        assert extension_for('zstd') == '.zstd'
        assert extension_for(None) == ''
