"""
Compression handler for stored backup files.

Uses zlib (deflate) with levels 0 (store) through 9 (best compression).
Files are streamed in fixed-size chunks so memory use stays bounded.
"""

import logging
import os
import zlib

from backupchain.errors import TransformError


logger = logging.getLogger(__name__)

NO_COMPRESSION = 0
BEST_SPEED = 1
DEFAULT_COMPRESSION = 6
BEST_COMPRESSION = 9

CHUNK_SIZE = 16384

# Second byte of a zlib header for the four standard compression levels
_ZLIB_FLAG_BYTES = (0x01, 0x5E, 0x9C, 0xDA)


class CompressionError(TransformError):
    """Raised when compression or decompression of the data fails."""
    pass


def validate_level(level: int) -> int:
    if not isinstance(level, int) or not NO_COMPRESSION <= level <= BEST_COMPRESSION:
        raise ValueError(
            f"Invalid compression level: {level}. Valid range: "
            f"{NO_COMPRESSION}-{BEST_COMPRESSION}"
        )
    return level


class Compressor:
    """
    Compresses and decompresses files, buffers and strings.

    Every successful compress operation adds to the running totals used by
    average_ratio().
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        self.chunk_size = chunk_size
        self.total_bytes_original = 0
        self.total_bytes_compressed = 0

    def compress_file(self, input_path: str, output_path: str, level: int = DEFAULT_COMPRESSION) -> int:
        """
        Compress a file into a zlib stream.

        Args:
            input_path: File to compress
            output_path: Destination of the compressed stream
            level: Compression level 0-9

        Returns:
            Size of the compressed output in bytes

        Raises:
            OSError: If either file cannot be opened, read or written
            CompressionError: If the deflate stream fails
            ValueError: If level is out of range
        """
        validate_level(level)
        original = 0
        written = 0

        with open(input_path, 'rb') as source, open(output_path, 'wb') as dest:
            try:
                compressor = zlib.compressobj(level)
                while True:
                    chunk = source.read(self.chunk_size)
                    if not chunk:
                        break
                    original += len(chunk)
                    out = compressor.compress(chunk)
                    dest.write(out)
                    written += len(out)
                out = compressor.flush()
            except zlib.error as e:
                raise CompressionError(f"Compression failed for {input_path}: {e}")
            dest.write(out)
            written += len(out)

        self._record(original, written)
        logger.debug(f"Compressed {input_path}: {original} -> {written} bytes (level {level})")
        return written

    def decompress_file(self, input_path: str, output_path: str) -> int:
        """
        Decompress a zlib stream file.

        Returns:
            Size of the decompressed output in bytes

        Raises:
            OSError: If either file cannot be opened, read or written
            CompressionError: If the stream is corrupt or truncated
        """
        written = 0

        with open(input_path, 'rb') as source, open(output_path, 'wb') as dest:
            decompressor = zlib.decompressobj()
            try:
                while not decompressor.eof:
                    chunk = source.read(self.chunk_size)
                    if not chunk:
                        break
                    # Cap each inflate step so a small input cannot expand unbounded in memory
                    data = decompressor.decompress(chunk, self.chunk_size)
                    dest.write(data)
                    written += len(data)
                    while decompressor.unconsumed_tail and not decompressor.eof:
                        data = decompressor.decompress(decompressor.unconsumed_tail, self.chunk_size)
                        dest.write(data)
                        written += len(data)
                data = decompressor.flush()
            except zlib.error as e:
                raise CompressionError(f"Decompression failed for {input_path}: {e}")
            dest.write(data)
            written += len(data)

        if not decompressor.eof:
            raise CompressionError(f"Compressed stream is truncated: {input_path}")

        return written

    def compress_data(self, data: bytes, level: int = DEFAULT_COMPRESSION) -> bytes:
        """Compress an in-memory buffer."""
        validate_level(level)
        try:
            result = zlib.compress(bytes(data), level)
        except zlib.error as e:
            raise CompressionError(f"Compression failed: {e}")

        self._record(len(data), len(result))
        return result

    def decompress_data(self, data: bytes) -> bytes:
        """
        Decompress an in-memory buffer.

        Raises:
            CompressionError: If the buffer is not a complete zlib stream
        """
        decompressor = zlib.decompressobj()
        try:
            result = decompressor.decompress(bytes(data)) + decompressor.flush()
        except zlib.error as e:
            raise CompressionError(f"Decompression failed: {e}")

        if not decompressor.eof:
            raise CompressionError("Compressed buffer is truncated")
        return result

    def compress_string(self, text: str, level: int = DEFAULT_COMPRESSION) -> bytes:
        return self.compress_data(text.encode('utf-8'), level)

    def decompress_string(self, data: bytes) -> str:
        return self.decompress_data(data).decode('utf-8')

    def compression_ratio(self, original_path: str, compressed_path: str) -> float:
        """Compressed size divided by original size; 0.0 for an empty original."""
        original_size = os.path.getsize(original_path)
        if original_size == 0:
            return 0.0
        return os.path.getsize(compressed_path) / original_size

    def compressed_size(self, compressed_path: str) -> int:
        return os.path.getsize(compressed_path)

    def is_compressed(self, file_path: str) -> bool:
        """Check whether a file starts with a zlib header."""
        try:
            with open(file_path, 'rb') as f:
                header = f.read(2)
        except OSError:
            return False

        return len(header) == 2 and header[0] == 0x78 and header[1] in _ZLIB_FLAG_BYTES

    def average_ratio(self) -> float:
        """Total compressed bytes over total original bytes across all compress calls."""
        if self.total_bytes_original == 0:
            return 0.0
        return self.total_bytes_compressed / self.total_bytes_original

    def reset_statistics(self):
        self.total_bytes_original = 0
        self.total_bytes_compressed = 0

    def _record(self, original: int, compressed: int):
        self.total_bytes_original += original
        self.total_bytes_compressed += compressed
