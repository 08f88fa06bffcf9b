"""
Unit tests for cryptography module (backupchain/utils/crypto.py).

Tests Encryptor key handling, AES-GCM encryption/decryption and HMAC tags.
"""

import os
import stat

import pytest

from backupchain.utils.crypto import (
    Encryptor,
    EncryptionError,
    BadHeaderError,
    KeyFileError,
    FORMAT_TAG,
    HEADER_SIZE,
    AUTH_TAG_SIZE
)


TEST_KEY = '00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff'
OTHER_KEY = 'ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100'


class TestEncryptorKeys:
    """Test key management."""

    def test_hex_key_is_decoded(self):
        """Test a 64-character hex key becomes 32 raw bytes."""
        encryptor = Encryptor(TEST_KEY)

        assert encryptor.key_hex == TEST_KEY
        assert encryptor.method == 'AES-256-GCM'

    def test_passphrase_key_is_padded(self):
        """Test a short non-hex key is zero-padded to 32 bytes."""
        encryptor = Encryptor('secret')

        assert encryptor.key_hex == (b'secret'.ljust(32, b'\0')).hex()

    def test_long_key_is_truncated(self):
        """Test key material longer than 32 bytes is truncated."""
        encryptor = Encryptor(b'k' * 40)

        assert encryptor.key_hex == (b'k' * 32).hex()

    def test_empty_key_rejected(self):
        """Test an empty key raises ValueError."""
        with pytest.raises(ValueError):
            Encryptor('')

    @pytest.mark.parametrize("bits", [128, 192, 256])
    def test_generate_key_sizes(self, bits):
        """Test generated keys have the requested size."""
        encryptor = Encryptor()

        key = encryptor.generate_key(bits)

        assert len(key) == bits // 4
        assert encryptor.method == f'AES-{bits}-GCM'

    def test_generate_key_invalid_size(self):
        """Test an unsupported key size raises ValueError."""
        with pytest.raises(ValueError, match="Invalid key size"):
            Encryptor().generate_key(512)

    def test_has_key(self):
        """Test has_key reflects whether a key is set."""
        encryptor = Encryptor()
        assert encryptor.has_key is False

        encryptor.set_key(TEST_KEY)
        assert encryptor.has_key is True

    def test_save_and_load_key_file(self, tmp_path):
        """Test a key file round trip with owner-only permissions."""
        key_file = tmp_path / 'backup.key'
        Encryptor(TEST_KEY).save_key_file(str(key_file))

        loaded = Encryptor()
        loaded.load_key_file(str(key_file))

        assert loaded.key_hex == TEST_KEY
        assert key_file.stat().st_size == 32
        assert stat.S_IMODE(key_file.stat().st_mode) == 0o600

    def test_load_key_file_wrong_size(self, tmp_path):
        """Test a key file that is not 32 bytes raises KeyFileError."""
        key_file = tmp_path / 'short.key'
        key_file.write_bytes(b'too short')

        with pytest.raises(KeyFileError, match="expected 32"):
            Encryptor().load_key_file(str(key_file))

    def test_save_key_file_requires_256_bit_key(self, tmp_path):
        """Test only 32-byte keys can be saved."""
        encryptor = Encryptor()
        encryptor.generate_key(128)

        with pytest.raises(KeyFileError):
            encryptor.save_key_file(str(tmp_path / 'backup.key'))

    def test_no_key_set(self):
        """Test encrypting without a key raises EncryptionError."""
        with pytest.raises(EncryptionError, match="No encryption key"):
            Encryptor().encrypt_data(b'data')


class TestEncryptorFiles:
    """Test file encryption and decryption."""

    def test_file_round_trip(self, tmp_path):
        """Test encrypting then decrypting a file restores it."""
        source = tmp_path / 'plain.bin'
        source.write_bytes(os.urandom(40000))
        encrypted = tmp_path / 'plain.enc'
        restored = tmp_path / 'restored.bin'
        encryptor = Encryptor(TEST_KEY, chunk_size=1024)

        written = encryptor.encrypt_file(str(source), str(encrypted))
        encryptor.decrypt_file(str(encrypted), str(restored))

        assert written == os.path.getsize(encrypted)
        assert written == 40000 + HEADER_SIZE + AUTH_TAG_SIZE
        assert restored.read_bytes() == source.read_bytes()

    def test_encrypted_layout(self, tmp_path):
        """Test the stored file starts with the format tag."""
        source = tmp_path / 'plain.txt'
        source.write_bytes(b'hello')
        encrypted = tmp_path / 'plain.enc'
        encryptor = Encryptor(TEST_KEY)

        encryptor.encrypt_file(str(source), str(encrypted))

        assert encrypted.read_bytes().startswith(FORMAT_TAG)
        assert encryptor.is_encrypted(str(encrypted)) is True
        assert encryptor.is_encrypted(str(source)) is False

    def test_fresh_iv_per_file(self, tmp_path):
        """Test encrypting the same file twice gives different output."""
        source = tmp_path / 'plain.txt'
        source.write_bytes(b'same content')
        encryptor = Encryptor(TEST_KEY)

        encryptor.encrypt_file(str(source), str(tmp_path / 'one.enc'))
        encryptor.encrypt_file(str(source), str(tmp_path / 'two.enc'))

        assert (tmp_path / 'one.enc').read_bytes() != (tmp_path / 'two.enc').read_bytes()

    def test_wrong_key_fails(self, tmp_path):
        """Test decrypting with another key raises EncryptionError."""
        source = tmp_path / 'plain.txt'
        source.write_bytes(b'secret data')
        encrypted = tmp_path / 'plain.enc'
        Encryptor(TEST_KEY).encrypt_file(str(source), str(encrypted))

        with pytest.raises(EncryptionError, match="Authentication failed"):
            Encryptor(OTHER_KEY).decrypt_file(str(encrypted), str(tmp_path / 'out'))

    def test_tampered_file_fails(self, tmp_path):
        """Test a flipped ciphertext byte is detected."""
        source = tmp_path / 'plain.txt'
        source.write_bytes(b'secret data that matters')
        encrypted = tmp_path / 'plain.enc'
        encryptor = Encryptor(TEST_KEY)
        encryptor.encrypt_file(str(source), str(encrypted))

        data = bytearray(encrypted.read_bytes())
        data[HEADER_SIZE] ^= 0xFF
        encrypted.write_bytes(bytes(data))

        with pytest.raises(EncryptionError):
            encryptor.decrypt_file(str(encrypted), str(tmp_path / 'out'))

    def test_bad_header_fails(self, tmp_path):
        """Test input without the format tag raises BadHeaderError."""
        plain = tmp_path / 'plain.txt'
        plain.write_bytes(b'this was never encrypted at all, honest')

        with pytest.raises(BadHeaderError):
            Encryptor(TEST_KEY).decrypt_file(str(plain), str(tmp_path / 'out'))

    def test_truncated_file_fails(self, tmp_path):
        """Test a file too short to hold an auth tag raises EncryptionError."""
        truncated = tmp_path / 'truncated.enc'
        truncated.write_bytes(FORMAT_TAG + os.urandom(16) + b'abc')

        with pytest.raises(EncryptionError, match="truncated"):
            Encryptor(TEST_KEY).decrypt_file(str(truncated), str(tmp_path / 'out'))


class TestEncryptorData:
    """Test buffer and string encryption."""

    def test_data_round_trip(self):
        """Test encrypt_data / decrypt_data restore the buffer."""
        encryptor = Encryptor(TEST_KEY)

        assert encryptor.decrypt_data(encryptor.encrypt_data(b'payload')) == b'payload'

    def test_empty_data_round_trip(self):
        """Test an empty buffer encrypts to header plus tag."""
        encryptor = Encryptor(TEST_KEY)

        encrypted = encryptor.encrypt_data(b'')

        assert len(encrypted) == HEADER_SIZE + AUTH_TAG_SIZE
        assert encryptor.decrypt_data(encrypted) == b''

    def test_string_round_trip(self):
        """Test strings travel as hex."""
        encryptor = Encryptor(TEST_KEY)

        encrypted = encryptor.encrypt_string('hello world')

        assert all(c in '0123456789abcdef' for c in encrypted)
        assert encryptor.decrypt_string(encrypted) == 'hello world'

    def test_decrypt_string_not_hex(self):
        """Test non-hex input raises BadHeaderError."""
        with pytest.raises(BadHeaderError):
            Encryptor(TEST_KEY).decrypt_string('not hex!')

    def test_decrypt_data_wrong_key(self):
        """Test a buffer from another key is rejected."""
        encrypted = Encryptor(TEST_KEY).encrypt_data(b'payload')

        with pytest.raises(EncryptionError):
            Encryptor(OTHER_KEY).decrypt_data(encrypted)


class TestKeyDerivationAndHmac:
    """Test PBKDF2 key derivation and HMAC tags."""

    def test_derive_key_deterministic(self):
        """Test the same password and salt give the same key."""
        first = Encryptor.derive_key('password', 'salt-value')
        second = Encryptor.derive_key('password', 'salt-value')

        assert first == second
        assert len(first) == 64

    def test_derive_key_depends_on_salt(self):
        """Test a different salt gives a different key."""
        assert Encryptor.derive_key('password', 'salt-a') != Encryptor.derive_key('password', 'salt-b')

    def test_derived_key_is_usable(self):
        """Test a derived key decrypts what it encrypted."""
        encryptor = Encryptor(Encryptor.derive_key('password', Encryptor.generate_salt()))

        assert encryptor.decrypt_data(encryptor.encrypt_data(b'data')) == b'data'

    def test_generate_salt(self):
        """Test salts are 16 random bytes, hex encoded."""
        salt = Encryptor.generate_salt()

        assert len(salt) == 32
        assert salt != Encryptor.generate_salt()

    def test_hmac_round_trip(self):
        """Test a computed tag verifies."""
        encryptor = Encryptor(TEST_KEY)

        tag = encryptor.compute_hmac('message')

        assert len(tag) == 64
        assert encryptor.verify_hmac('message', tag) is True
        assert encryptor.verify_hmac(b'message', tag) is True

    def test_hmac_rejects_other_data_or_key(self):
        """Test tags fail for altered data, another key or malformed input."""
        tag = Encryptor(TEST_KEY).compute_hmac('message')

        assert Encryptor(TEST_KEY).verify_hmac('messagf', tag) is False
        assert Encryptor(OTHER_KEY).verify_hmac('message', tag) is False
        assert Encryptor(TEST_KEY).verify_hmac('message', 'zz') is False
