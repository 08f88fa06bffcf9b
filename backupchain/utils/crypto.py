"""
Encryption utilities for stored backup files.

Uses AES in GCM mode with a fresh random IV for every file or buffer. The
stored layout is an 8-byte format tag, the 16-byte IV, the ciphertext and
the 16-byte GCM authentication tag.
"""

import logging
import os
import string
from typing import Union

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from backupchain.errors import TransformError


logger = logging.getLogger(__name__)

FORMAT_TAG = b'BKCHAIN1'
IV_SIZE = 16
AUTH_TAG_SIZE = 16
HEADER_SIZE = len(FORMAT_TAG) + IV_SIZE

KEY_FILE_SIZE = 32
VALID_KEY_SIZES = (128, 192, 256)
KDF_ITERATIONS = 100000
SALT_SIZE = 16
CHUNK_SIZE = 16384


class EncryptionError(TransformError):
    """Raised when encryption or decryption of the data fails."""
    pass


class BadHeaderError(EncryptionError):
    """Raised when encrypted input does not start with the expected format tag."""
    pass


class KeyFileError(EncryptionError):
    """Raised when a key file does not hold a valid key."""
    pass


def _is_hex(value: str) -> bool:
    return all(c in string.hexdigits for c in value)


class Encryptor:
    """Handles key management, encryption and decryption of backup data."""

    def __init__(self, key: Union[str, bytes, None] = None, chunk_size: int = CHUNK_SIZE):
        self._key = None
        self.chunk_size = chunk_size
        if key is not None:
            self.set_key(key)

    def set_key(self, key: Union[str, bytes]):
        """
        Set the active key.

        A 64-character hexadecimal string is decoded to 32 bytes. Any other
        value is used as raw key material, zero-padded or truncated to 32 bytes.

        Raises:
            ValueError: If the key is empty
        """
        if not key:
            raise ValueError("Encryption key cannot be empty")

        if isinstance(key, str):
            if len(key) == KEY_FILE_SIZE * 2 and _is_hex(key):
                self._key = bytes.fromhex(key)
                return
            key = key.encode('utf-8')

        self._key = bytes(key[:KEY_FILE_SIZE]).ljust(KEY_FILE_SIZE, b'\0')

    def generate_key(self, key_size: int = 256) -> str:
        """
        Generate and activate a random key.

        Args:
            key_size: Key size in bits (128, 192 or 256)

        Returns:
            The new key, hex encoded
        """
        if key_size not in VALID_KEY_SIZES:
            raise ValueError(f"Invalid key size: {key_size}. Valid options: {list(VALID_KEY_SIZES)}")

        self._key = os.urandom(key_size // 8)
        return self.key_hex

    @property
    def key_hex(self) -> str:
        return self._key.hex() if self._key else ''

    @property
    def method(self) -> str:
        """Cipher name for the active key, e.g. AES-256-GCM."""
        return f"AES-{len(self._require_key()) * 8}-GCM"

    @property
    def has_key(self) -> bool:
        return self._key is not None

    def load_key_file(self, key_file: str):
        """
        Load a raw 32-byte key from a file.

        Raises:
            OSError: If the file cannot be read
            KeyFileError: If the file does not hold exactly 32 bytes
        """
        with open(key_file, 'rb') as f:
            key = f.read()

        if len(key) != KEY_FILE_SIZE:
            raise KeyFileError(
                f"Key file {key_file} holds {len(key)} bytes, expected {KEY_FILE_SIZE}"
            )
        self._key = key

    def save_key_file(self, key_file: str):
        """Write the active key as raw bytes, readable only by the owner."""
        key = self._require_key()
        if len(key) != KEY_FILE_SIZE:
            raise KeyFileError(f"Only {KEY_FILE_SIZE * 8}-bit keys can be saved to a key file")

        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(key)

    def encrypt_file(self, input_path: str, output_path: str) -> int:
        """
        Encrypt a file.

        Returns:
            Size of the encrypted output in bytes

        Raises:
            EncryptionError: If no key is set
            OSError: If either file cannot be opened, read or written
        """
        iv = os.urandom(IV_SIZE)
        encryptor = self._cipher(iv).encryptor()
        written = 0

        with open(input_path, 'rb') as source, open(output_path, 'wb') as dest:
            dest.write(FORMAT_TAG)
            dest.write(iv)
            written += HEADER_SIZE

            for chunk in iter(lambda: source.read(self.chunk_size), b''):
                out = encryptor.update(chunk)
                dest.write(out)
                written += len(out)

            out = encryptor.finalize()
            dest.write(out)
            dest.write(encryptor.tag)
            written += len(out) + AUTH_TAG_SIZE

        return written

    def decrypt_file(self, input_path: str, output_path: str) -> int:
        """
        Decrypt a file produced by encrypt_file.

        Returns:
            Size of the decrypted output in bytes

        Raises:
            BadHeaderError: If the format tag is missing or does not match
            EncryptionError: If the key is wrong or the data was altered
            OSError: If either file cannot be opened, read or written
        """
        self._require_key()
        written = 0

        with open(input_path, 'rb') as source:
            iv = self._read_header(source.read(HEADER_SIZE), input_path)
            remaining = os.fstat(source.fileno()).st_size - HEADER_SIZE - AUTH_TAG_SIZE
            if remaining < 0:
                raise EncryptionError(f"Encrypted file is truncated: {input_path}")

            decryptor = self._cipher(iv).decryptor()
            with open(output_path, 'wb') as dest:
                while remaining > 0:
                    chunk = source.read(min(self.chunk_size, remaining))
                    if not chunk:
                        raise EncryptionError(f"Encrypted file is truncated: {input_path}")
                    remaining -= len(chunk)
                    out = decryptor.update(chunk)
                    dest.write(out)
                    written += len(out)

                tag = source.read(AUTH_TAG_SIZE)
                try:
                    out = decryptor.finalize_with_tag(tag)
                except (InvalidTag, ValueError):
                    raise EncryptionError(
                        f"Authentication failed for {input_path}: wrong key or corrupted data"
                    )
                dest.write(out)
                written += len(out)

        return written

    def encrypt_data(self, data: bytes) -> bytes:
        """Encrypt a buffer into the same tagged layout used for files."""
        iv = os.urandom(IV_SIZE)
        encryptor = self._cipher(iv).encryptor()
        ciphertext = encryptor.update(bytes(data)) + encryptor.finalize()
        return FORMAT_TAG + iv + ciphertext + encryptor.tag

    def decrypt_data(self, data: bytes) -> bytes:
        """
        Decrypt a buffer produced by encrypt_data.

        Raises:
            BadHeaderError: If the format tag is missing or does not match
            EncryptionError: If the key is wrong or the data was altered
        """
        self._require_key()
        data = bytes(data)
        iv = self._read_header(data[:HEADER_SIZE], 'buffer')
        if len(data) < HEADER_SIZE + AUTH_TAG_SIZE:
            raise EncryptionError("Encrypted buffer is truncated")

        ciphertext = data[HEADER_SIZE:-AUTH_TAG_SIZE]
        tag = data[-AUTH_TAG_SIZE:]
        decryptor = self._cipher(iv).decryptor()
        try:
            return decryptor.update(ciphertext) + decryptor.finalize_with_tag(tag)
        except InvalidTag:
            raise EncryptionError("Authentication failed: wrong key or corrupted data")

    def encrypt_string(self, plaintext: str) -> str:
        """Encrypt text and return the result hex encoded."""
        return self.encrypt_data(plaintext.encode('utf-8')).hex()

    def decrypt_string(self, encrypted: str) -> str:
        try:
            data = bytes.fromhex(encrypted)
        except ValueError:
            raise BadHeaderError("Encrypted text is not valid hex")
        return self.decrypt_data(data).decode('utf-8')

    def is_encrypted(self, file_path: str) -> bool:
        """Check whether a file starts with the encryption format tag."""
        try:
            with open(file_path, 'rb') as f:
                return f.read(len(FORMAT_TAG)) == FORMAT_TAG
        except OSError:
            return False

    def compute_hmac(self, data: Union[str, bytes]) -> str:
        """Compute an HMAC-SHA256 tag over data with the active key, hex encoded."""
        h = hmac.HMAC(self._require_key(), hashes.SHA256())
        h.update(data.encode('utf-8') if isinstance(data, str) else bytes(data))
        return h.finalize().hex()

    def verify_hmac(self, data: Union[str, bytes], tag: str) -> bool:
        """Verify an HMAC-SHA256 tag in constant time."""
        h = hmac.HMAC(self._require_key(), hashes.SHA256())
        h.update(data.encode('utf-8') if isinstance(data, str) else bytes(data))
        try:
            h.verify(bytes.fromhex(tag))
            return True
        except (InvalidSignature, ValueError):
            return False

    @staticmethod
    def derive_key(password: str, salt: str, iterations: int = KDF_ITERATIONS) -> str:
        """
        Derive a 256-bit key from a password and salt using PBKDF2-HMAC-SHA256.

        Returns:
            The derived key, hex encoded (suitable for set_key)
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_FILE_SIZE,
            salt=salt.encode('utf-8'),
            iterations=iterations,
        )
        return kdf.derive(password.encode('utf-8')).hex()

    @staticmethod
    def generate_salt() -> str:
        """Generate a random 16-byte salt, hex encoded."""
        return os.urandom(SALT_SIZE).hex()

    def _require_key(self) -> bytes:
        if self._key is None:
            raise EncryptionError("No encryption key set")
        return self._key

    def _cipher(self, iv: bytes) -> Cipher:
        try:
            return Cipher(algorithms.AES(self._require_key()), modes.GCM(iv))
        except ValueError as e:
            raise EncryptionError(f"Failed to initialize cipher: {e}")

    @staticmethod
    def _read_header(header: bytes, source: str) -> bytes:
        if len(header) < len(FORMAT_TAG) or header[:len(FORMAT_TAG)] != FORMAT_TAG:
            raise BadHeaderError(f"Invalid encryption header: {source}")
        if len(header) < HEADER_SIZE:
            raise BadHeaderError(f"Missing initialization vector: {source}")
        return header[len(FORMAT_TAG):HEADER_SIZE]
