"""
File Encryption Module
======================

Client-side file encryption before upload.

Security Properties:
- Content key derived per call and wiped afterwards
- Body encrypted with the chunked AES-256-GCM engine
- Filename and declared type encrypted separately (independent nonces)
- Upload limits checked before any encryption work

File Format:
    EncryptedFile consists of:
    1. Header (magic bytes, version, framing, chunk size, metadata length)
    2. Metadata tokens as UTF-8 JSON {"name": ..., "type": ...}
    3. Encrypted body (base_nonce || chunks)

The container is used for offline storage; the ciphertext store keeps the
same three parts in separate columns.
"""

from __future__ import annotations

import json
import mimetypes
import re
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Final, Optional

from zerovault.core.config import UploadConfig, VaultConfig
from zerovault.core.crypto.chunked import (
    ChunkedCipherEngine,
    EncryptedBlob,
    Framing,
    ProgressCallback,
)
from zerovault.core.crypto.kdf import KeyDerivationService
from zerovault.core.errors import FileValidationError, TruncatedInput
from zerovault.core.file_ops.metadata import (
    GENERIC_CONTENT_TYPE,
    EncryptedMetadata,
    FileMetadata,
    MetadataCodec,
)
from zerovault.core.logging import get_secure_logger

logger = get_secure_logger(__name__)

# File format constants
MAGIC_BYTES: Final[bytes] = b"ZVEF"  # ZeroVault Encrypted File
FILE_FORMAT_VERSION: Final[int] = 1
HEADER_SIZE: Final[int] = 16  # MAGIC(4) + VERSION(2) + FRAMING(2) + CHUNK_SIZE(4) + META_LEN(4)
MAX_METADATA_SIZE: Final[int] = 64 * 1024

_FRAMING_CODES: Final[dict[Framing, int]] = {Framing.CHUNKED_V1: 0, Framing.LEGACY: 1}
_FRAMING_BY_CODE: Final[dict[int, Framing]] = {v: k for k, v in _FRAMING_CODES.items()}

_FILENAME_CHARSET = re.compile(r"^[a-zA-Z0-9._-]+$")


def validate_file_for_upload(
    name: str,
    size: int,
    declared_type: Optional[str] = None,
    config: Optional[UploadConfig] = None,
) -> None:
    """
    Check a file against upload limits before it is encrypted.

    Args:
        name: Original filename
        size: Plaintext size in bytes
        declared_type: Declared content type; empty means unknown
        config: Upload limits (defaults apply when omitted)

    Raises:
        FileValidationError: If any limit is violated
    """
    config = config or UploadConfig()

    if size < 0:
        raise FileValidationError("File size cannot be negative")
    if size > config.max_file_size:
        raise FileValidationError(
            f"File size exceeds maximum allowed size of "
            f"{config.max_file_size // (1024 * 1024)}MB"
        )

    if declared_type and declared_type not in config.allowed_types:
        raise FileValidationError(f"File type {declared_type} is not allowed")

    if not isinstance(name, str) or not name.strip():
        raise FileValidationError("Filename cannot be empty")
    if len(name) > config.max_filename_length:
        raise FileValidationError("Filename is too long")
    if "\x00" in name:
        raise FileValidationError("Filename contains invalid characters")
    if config.restrict_filename_charset and not _FILENAME_CHARSET.match(re.sub(r"\s+", "-", name)):
        raise FileValidationError("Filename contains invalid characters")


@dataclass(frozen=True, slots=True)
class EncryptedFile:
    """
    Encrypted body plus encrypted metadata, ready for upload.

    Attributes:
        blob: Encrypted body
        metadata: Encrypted name and declared type tokens
        original_size: Plaintext size in bytes
    """

    blob: EncryptedBlob
    metadata: EncryptedMetadata
    original_size: int

    @property
    def encrypted_size(self) -> int:
        return len(self.blob)

    def to_bytes(self) -> bytes:
        """
        Serialize to the container format.

        Format:
            HEADER (16 bytes):
                - MAGIC: 4 bytes
                - VERSION: 2 bytes (little-endian)
                - FRAMING: 2 bytes
                - CHUNK_SIZE: 4 bytes
                - META_LEN: 4 bytes
            METADATA: META_LEN bytes of UTF-8 JSON
            BODY: remaining bytes
        """
        meta_bytes = json.dumps(
            {"name": self.metadata.name, "type": self.metadata.declared_type},
            separators=(",", ":"),
        ).encode("utf-8")

        header = struct.pack(
            "<4sHHII",
            MAGIC_BYTES,
            FILE_FORMAT_VERSION,
            _FRAMING_CODES[self.blob.framing],
            self.blob.chunk_size,
            len(meta_bytes),
        )
        return header + meta_bytes + self.blob.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes, original_size: int = -1) -> "EncryptedFile":
        """
        Parse the container format.

        Raises:
            TruncatedInput: If the container is malformed
        """
        if len(data) < HEADER_SIZE:
            raise TruncatedInput("Data too short for encrypted file")

        magic, version, framing_code, chunk_size, meta_len = struct.unpack(
            "<4sHHII", data[:HEADER_SIZE]
        )
        if magic != MAGIC_BYTES:
            raise TruncatedInput("Invalid file format (bad magic bytes)")
        if version != FILE_FORMAT_VERSION:
            raise TruncatedInput(f"Unsupported file format version: {version}")
        if framing_code not in _FRAMING_BY_CODE:
            raise TruncatedInput("Unknown framing")
        if meta_len > MAX_METADATA_SIZE:
            raise TruncatedInput("Metadata too large")

        meta_end = HEADER_SIZE + meta_len
        if len(data) < meta_end:
            raise TruncatedInput("Data truncated (incomplete metadata)")

        try:
            tokens = json.loads(data[HEADER_SIZE:meta_end].decode("utf-8"))
            metadata = EncryptedMetadata(name=tokens["name"], declared_type=tokens["type"])
        except (UnicodeDecodeError, ValueError, KeyError, TypeError):
            raise TruncatedInput("Metadata block is malformed") from None

        blob = EncryptedBlob.from_bytes(
            data[meta_end:],
            chunk_size=chunk_size,
            framing=_FRAMING_BY_CODE[framing_code],
        )
        return cls(blob=blob, metadata=metadata, original_size=original_size)

    def save(self, path: Path | str) -> None:
        """Save encrypted file to disk."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.to_bytes())

    @classmethod
    def load(cls, path: Path | str) -> "EncryptedFile":
        """Load encrypted file from disk."""
        return cls.from_bytes(Path(path).read_bytes())

    def __repr__(self) -> str:
        return f"EncryptedFile(encrypted_size={self.encrypted_size}, framing={self.blob.framing.value})"


class FileEncryptor:
    """
    Encrypt files for upload.

    Usage:
        encryptor = FileEncryptor()

        encrypted = encryptor.encrypt_file(Path("report.pdf"), user_id)
        encrypted.save(Path("report.pdf.zvef"))

        encrypted = encryptor.encrypt_bytes(data, "notes.txt", user_id)

    Security Notes:
        - The content key is derived for each call and wiped on return
        - Filename and declared type never leave the client in plaintext
    """

    __slots__ = ("_keys", "_engine", "_codec", "_upload")

    def __init__(
        self,
        key_service: Optional[KeyDerivationService] = None,
        engine: Optional[ChunkedCipherEngine] = None,
        codec: Optional[MetadataCodec] = None,
        config: Optional[VaultConfig] = None,
    ) -> None:
        config = config or VaultConfig()
        self._keys = key_service or KeyDerivationService()
        self._engine = engine or ChunkedCipherEngine(config.cipher)
        self._codec = codec or MetadataCodec()
        self._upload = config.upload

    def encrypt_bytes(
        self,
        content: bytes | bytearray | memoryview,
        filename: str,
        stable_user_id: str,
        declared_type: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> EncryptedFile:
        """
        Encrypt in-memory content with its metadata.

        Args:
            content: Plaintext
            filename: Original filename
            stable_user_id: Account identifier the content key derives from
            declared_type: Declared content type (generic when omitted)
            progress: Optional per-chunk progress callback

        Raises:
            FileValidationError: If upload limits are violated
            InvalidKeyMaterial: If the identifier is unusable
        """
        validate_file_for_upload(filename, len(content), declared_type, self._upload)
        return self._encrypt(content, len(content), filename, stable_user_id, declared_type, progress)

    def encrypt_stream(
        self,
        stream: BinaryIO,
        filename: str,
        stable_user_id: str,
        size: int,
        declared_type: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> EncryptedFile:
        """
        Encrypt a binary stream chunk by chunk.

        `size` is the expected plaintext length, used for validation and
        progress reporting.
        """
        validate_file_for_upload(filename, size, declared_type, self._upload)
        return self._encrypt(stream, size, filename, stable_user_id, declared_type, progress)

    def encrypt_file(
        self,
        source_path: Path | str,
        stable_user_id: str,
        declared_type: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> EncryptedFile:
        """
        Encrypt a file from disk.

        Raises:
            FileNotFoundError: If source file doesn't exist
            FileValidationError: If upload limits are violated
        """
        source_path = Path(source_path)

        if not source_path.exists():
            raise FileNotFoundError(f"File not found: {source_path}")
        if not source_path.is_file():
            raise ValueError(f"Not a file: {source_path}")

        if declared_type is None:
            declared_type = self._guess_mime_type(source_path)

        with source_path.open("rb") as stream:
            return self.encrypt_stream(
                stream,
                source_path.name,
                stable_user_id,
                size=source_path.stat().st_size,
                declared_type=declared_type,
                progress=progress,
            )

    def _encrypt(self, source, size, filename, stable_user_id, declared_type, progress) -> EncryptedFile:
        with self._keys.derive_content_key(stable_user_id) as key:
            metadata = self._codec.encrypt_metadata(
                key,
                FileMetadata(name=filename, declared_type=declared_type or GENERIC_CONTENT_TYPE),
            )
            blob = self._engine.encrypt_stream(key, source, progress)

        logger.info("Encrypted file: %d bytes -> %d bytes", size, len(blob))
        return EncryptedFile(blob=blob, metadata=metadata, original_size=size)

    @staticmethod
    def _guess_mime_type(path: Path) -> Optional[str]:
        """Guess MIME type from file extension."""
        mime_type, _ = mimetypes.guess_type(str(path))
        return mime_type


def encrypt_file(
    source_path: Path | str,
    stable_user_id: str,
    output_path: Optional[Path | str] = None,
    **kwargs,
) -> Path:
    """
    Convenience function to encrypt a file to disk.

    Args:
        source_path: Path to file to encrypt
        stable_user_id: Account identifier
        output_path: Optional output path (default: source + .zvef)
        **kwargs: Additional arguments for FileEncryptor.encrypt_file

    Returns:
        Path to encrypted file
    """
    source_path = Path(source_path)

    if output_path is None:
        output_path = source_path.with_suffix(source_path.suffix + ".zvef")
    else:
        output_path = Path(output_path)

    encrypted = FileEncryptor().encrypt_file(source_path, stable_user_id, **kwargs)
    encrypted.save(output_path)

    return output_path


def encrypt_bytes(
    content: bytes,
    filename: str,
    stable_user_id: str,
    **kwargs,
) -> EncryptedFile:
    """Convenience function to encrypt bytes."""
    return FileEncryptor().encrypt_bytes(content, filename, stable_user_id, **kwargs)
