"""
Transform pipeline applied to file content on its way into and out of a backup.

Write order is compress-then-encrypt; read order is decrypt-then-decompress.
Each stage is toggled per call.
"""

import logging
import os
import shutil
import tempfile
from typing import Optional

from .compression import Compressor, DEFAULT_COMPRESSION
from backupchain.utils.crypto import Encryptor


logger = logging.getLogger(__name__)


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial output {path}: {e}")


class TransformPipeline:
    """Composes a Compressor and an Encryptor in a fixed order."""

    def __init__(self, compressor: Optional[Compressor] = None, encryptor: Optional[Encryptor] = None):
        self.compressor = compressor or Compressor()
        self.encryptor = encryptor or Encryptor()

    def apply_file(
        self,
        source_path: str,
        dest_path: str,
        compress: bool = True,
        encrypt: bool = False,
        level: int = DEFAULT_COMPRESSION
    ) -> int:
        """
        Copy a file into the backup, compressing and/or encrypting it.

        On failure the partial destination file is removed before the
        exception propagates.

        Returns:
            Size of the stored file in bytes

        Raises:
            OSError: On read/write failure
            TransformError: On compression or encryption failure
        """
        try:
            if compress and encrypt:
                intermediate = self._intermediate_path(dest_path)
                try:
                    self.compressor.compress_file(source_path, intermediate, level)
                    self.encryptor.encrypt_file(intermediate, dest_path)
                finally:
                    _remove_quietly(intermediate)
            elif compress:
                self.compressor.compress_file(source_path, dest_path, level)
            elif encrypt:
                self.encryptor.encrypt_file(source_path, dest_path)
            else:
                shutil.copyfile(source_path, dest_path)
        except Exception:
            _remove_quietly(dest_path)
            raise

        return os.path.getsize(dest_path)

    def reverse_file(self, stored_path: str, dest_path: str, compressed: bool = True, encrypted: bool = False) -> int:
        """
        Recover the original content of a stored file.

        Returns:
            Size of the recovered file in bytes

        Raises:
            OSError: On read/write failure
            TransformError: On decryption or decompression failure
        """
        try:
            if compressed and encrypted:
                intermediate = self._intermediate_path(dest_path)
                try:
                    self.encryptor.decrypt_file(stored_path, intermediate)
                    self.compressor.decompress_file(intermediate, dest_path)
                finally:
                    _remove_quietly(intermediate)
            elif compressed:
                self.compressor.decompress_file(stored_path, dest_path)
            elif encrypted:
                self.encryptor.decrypt_file(stored_path, dest_path)
            else:
                shutil.copyfile(stored_path, dest_path)
        except Exception:
            _remove_quietly(dest_path)
            raise

        return os.path.getsize(dest_path)

    def apply_bytes(self, data: bytes, compress: bool = True, encrypt: bool = False,
                    level: int = DEFAULT_COMPRESSION) -> bytes:
        if compress:
            data = self.compressor.compress_data(data, level)
        if encrypt:
            data = self.encryptor.encrypt_data(data)
        return data

    def reverse_bytes(self, data: bytes, compressed: bool = True, encrypted: bool = False) -> bytes:
        if encrypted:
            data = self.encryptor.decrypt_data(data)
        if compressed:
            data = self.compressor.decompress_data(data)
        return data

    @staticmethod
    def _intermediate_path(dest_path: str) -> str:
        directory = os.path.dirname(os.path.abspath(dest_path))
        fd, path = tempfile.mkstemp(prefix='.transform_', suffix='.tmp', dir=directory)
        os.close(fd)
        return path
