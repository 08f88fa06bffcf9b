"""
Content digests used as the unit of file identity.
"""

import hashlib

CHUNK_SIZE = 65536


def _digest_file(file_path: str, algorithm: str) -> str:
    h = hashlib.new(algorithm)
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            h.update(chunk)
    return h.hexdigest()


def sha256_file(file_path: str) -> str:
    """
    Compute the SHA-256 hex digest of a file, reading it in chunks.

    Raises:
        OSError: If the file cannot be opened or read
    """
    return _digest_file(file_path, 'sha256')


def sha256_bytes(data: bytes) -> str:
    """Compute the SHA-256 hex digest of a byte buffer."""
    return hashlib.sha256(data).hexdigest()


def md5_file(file_path: str) -> str:
    """Compute the MD5 hex digest of a file."""
    return _digest_file(file_path, 'md5')


def md5_bytes(data: bytes) -> str:
    """Compute the MD5 hex digest of a byte buffer."""
    return hashlib.md5(data).hexdigest()


def verify_checksum(file_path: str, expected_checksum: str) -> bool:
    """
    Check a file's SHA-256 digest against an expected value.

    Returns False (rather than raising) when the file cannot be read.
    """
    try:
        return sha256_file(file_path) == expected_checksum.lower()
    except OSError:
        return False
