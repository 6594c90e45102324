"""
Tests for file encryption, the container format and decryption.
"""

import io
import os
import struct

import pytest

from zerovault.core.config import CipherConfig, UploadConfig, VaultConfig
from zerovault.core.errors import (
    AuthenticationFailed,
    FileValidationError,
    InvalidKeyMaterial,
    TruncatedInput,
)
from zerovault.core.file_ops.decrypt import FileDecryptor, decrypt_bytes
from zerovault.core.file_ops.encrypt import (
    HEADER_SIZE,
    MAGIC_BYTES,
    EncryptedFile,
    FileEncryptor,
    encrypt_file,
    validate_file_for_upload,
)
from zerovault.core.file_ops.metadata import GENERIC_CONTENT_TYPE

from tests.conftest import OTHER_USER_ID, USER_ID


@pytest.fixture(scope="module")
def encryptor():
    return FileEncryptor()


@pytest.fixture(scope="module")
def decryptor():
    return FileDecryptor()


class TestUploadValidation:
    """Tests for pre-encryption checks."""

    def test_valid(self):
        """Ordinary files pass."""
        validate_file_for_upload("report.pdf", 1024, "application/pdf")
        validate_file_for_upload("unknown", 0)

    @pytest.mark.parametrize("name, size, declared_type, message", [
        ("a.txt", -1, None, "File size cannot be negative"),
        ("a.txt", 100 * 1024 * 1024 + 1, None, "File size exceeds maximum allowed size of 100MB"),
        ("a.exe", 10, "application/x-msdownload", "File type application/x-msdownload is not allowed"),
        ("", 10, None, "Filename cannot be empty"),
        ("   ", 10, None, "Filename cannot be empty"),
        ("a" * 256, 10, None, "Filename is too long"),
        ("a\x00.txt", 10, None, "Filename contains invalid characters"),
    ])
    def test_rejected(self, name, size, declared_type, message):
        """Each limit has its own message."""
        with pytest.raises(FileValidationError) as exc_info:
            validate_file_for_upload(name, size, declared_type)
        assert str(exc_info.value) == message
        assert exc_info.value.safe_message == message

    def test_restricted_charset(self):
        """The optional server charset rule collapses whitespace first."""
        config = UploadConfig(restrict_filename_charset=True)
        validate_file_for_upload("my report.pdf", 1, config=config)
        with pytest.raises(FileValidationError):
            validate_file_for_upload("résumé.pdf", 1, config=config)

    def test_encryptor_validates_first(self):
        """Limits apply before any key is derived."""
        encryptor = FileEncryptor(config=VaultConfig(upload=UploadConfig(max_file_size=4)))
        with pytest.raises(FileValidationError):
            encryptor.encrypt_bytes(b"12345", "a.txt", "")


class TestEncryptDecrypt:
    """Round trips through the encryptor and decryptor."""

    def test_bytes_round_trip(self, encryptor, decryptor):
        """Content and metadata survive."""
        content = os.urandom(200_000)
        encrypted = encryptor.encrypt_bytes(content, "photo.jpg", USER_ID, declared_type="image/jpeg")

        with decryptor.decrypt(encrypted, USER_ID) as result:
            assert result.get_content() == content
            assert result.metadata.name == "photo.jpg"
            assert result.metadata.declared_type == "image/jpeg"
        assert result.is_wiped

    def test_default_declared_type(self, encryptor, decryptor):
        """Files without a declared type get the generic type."""
        encrypted = encryptor.encrypt_bytes(b"x", "blob", USER_ID)
        assert decryptor.decrypt_metadata(encrypted, USER_ID).declared_type == GENERIC_CONTENT_TYPE

    def test_stream_round_trip(self, encryptor, decryptor):
        """Streams encrypt chunk by chunk with progress."""
        content = os.urandom(3 * 65536 + 5)
        reports = []
        encrypted = encryptor.encrypt_stream(
            io.BytesIO(content), "data.bin", USER_ID, size=len(content), progress=reports.append
        )
        assert encrypted.blob.chunk_count == 4
        assert reports[-1].percentage == 100
        content_out, _ = decrypt_bytes(encrypted, USER_ID)
        assert content_out == content

    def test_sizes(self, encryptor):
        """Encrypted size is nonce plus one tag per chunk over the plaintext."""
        encrypted = encryptor.encrypt_bytes(b"a" * 100, "a.txt", USER_ID)
        assert encrypted.original_size == 100
        assert encrypted.encrypted_size == 12 + 100 + 16

    def test_configured_chunk_size(self, decryptor):
        """The engine follows the configured chunk size."""
        encryptor = FileEncryptor(config=VaultConfig(cipher=CipherConfig(chunk_size=1024)))
        encrypted = encryptor.encrypt_bytes(os.urandom(4096), "a.bin", USER_ID)
        assert encrypted.blob.chunk_size == 1024
        assert encrypted.blob.chunk_count == 4
        with decryptor.decrypt(encrypted, USER_ID) as result:
            assert result.content.size == 4096

    def test_wrong_identifier(self, encryptor, decryptor):
        """Another account cannot decrypt."""
        encrypted = encryptor.encrypt_bytes(b"secret", "a.txt", USER_ID)
        with pytest.raises(AuthenticationFailed):
            decryptor.decrypt(encrypted, OTHER_USER_ID)

    def test_invalid_identifier(self, encryptor):
        """Empty identifiers cannot derive a key."""
        with pytest.raises(InvalidKeyMaterial):
            encryptor.encrypt_bytes(b"secret", "a.txt", "")

    def test_repr_hides_content(self, encryptor, decryptor):
        """Reprs show sizes only."""
        encrypted = encryptor.encrypt_bytes(b"top secret", "diary.txt", USER_ID)
        with decryptor.decrypt(encrypted, USER_ID) as result:
            assert "top secret" not in repr(result)
            assert "diary" not in repr(result)


class TestContainer:
    """Tests for the offline container format."""

    def test_round_trip(self, encryptor, decryptor):
        """Serialized containers decrypt."""
        encrypted = encryptor.encrypt_bytes(b"container body", "c.txt", USER_ID)
        data = encrypted.to_bytes()

        magic, version, framing, chunk_size, meta_len = struct.unpack("<4sHHII", data[:HEADER_SIZE])
        assert magic == MAGIC_BYTES
        assert (version, framing, chunk_size) == (1, 0, 65536)

        parsed = EncryptedFile.from_bytes(data)
        assert parsed.blob == encrypted.blob
        assert parsed.metadata == encrypted.metadata
        with decryptor.decrypt(parsed, USER_ID) as result:
            assert result.get_content() == b"container body"

    @pytest.mark.parametrize("mutate", [
        lambda d: d[:10],
        lambda d: b"XXXX" + d[4:],
        lambda d: d[:4] + struct.pack("<H", 9) + d[6:],
        lambda d: d[:6] + struct.pack("<H", 7) + d[8:],
        lambda d: d[:12] + struct.pack("<I", 10_000) + d[16:],
        lambda d: d[:HEADER_SIZE] + b"X" + d[HEADER_SIZE + 1:],
    ])
    def test_malformed(self, encryptor, mutate):
        """Bad magic, version, framing, lengths or metadata are rejected."""
        data = encryptor.encrypt_bytes(b"body", "c.txt", USER_ID).to_bytes()
        with pytest.raises(TruncatedInput):
            EncryptedFile.from_bytes(mutate(data))

    def test_save_and_load(self, encryptor, decryptor, tmp_path):
        """Containers persist to disk."""
        path = tmp_path / "nested" / "c.zvef"
        encryptor.encrypt_bytes(b"on disk", "c.txt", USER_ID).save(path)
        with decryptor.decrypt_file(path, USER_ID) as result:
            assert result.get_content() == b"on disk"

    def test_encrypt_file_helper(self, tmp_path, decryptor):
        """encrypt_file writes a .zvef next to the source."""
        source = tmp_path / "notes.txt"
        source.write_bytes(b"plain notes")

        output = encrypt_file(source, USER_ID)

        assert output == tmp_path / "notes.txt.zvef"
        with decryptor.decrypt_file(output, USER_ID) as result:
            assert result.get_content() == b"plain notes"
            assert result.metadata.name == "notes.txt"
            assert result.metadata.declared_type == "text/plain"

    def test_missing_source(self, encryptor, decryptor, tmp_path):
        """Missing files raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            encryptor.encrypt_file(tmp_path / "nope.txt", USER_ID)
        with pytest.raises(FileNotFoundError):
            decryptor.decrypt_file(tmp_path / "nope.zvef", USER_ID)
