"""
Metadata Codec
==============

Encrypts the small strings stored beside a file body: the original
filename and the declared content type.

Token format (matches the browser client):
    base64( nonce(12) || AES-GCM ciphertext || tag(16) )

Each field gets its own fresh nonce, independent of the body's nonce, so
metadata and body can be decrypted without one another.

Note:
    The declared type recovered here is frequently a generic placeholder
    (application/octet-stream). It is advisory only; rendering decisions
    come from the content classifier.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Final

from zerovault.core.crypto.aes_gcm import AES_NONCE_SIZE, AES_TAG_SIZE, AesGcmCipher
from zerovault.core.crypto.kdf import KeyLike, key_bytes
from zerovault.core.errors import AuthenticationFailed, TruncatedInput

GENERIC_CONTENT_TYPE: Final[str] = "application/octet-stream"


@dataclass(frozen=True, slots=True)
class FileMetadata:
    """Plaintext metadata for one file."""

    name: str
    declared_type: str = GENERIC_CONTENT_TYPE

    @property
    def is_generic_type(self) -> bool:
        return not self.declared_type or self.declared_type == GENERIC_CONTENT_TYPE

    def __repr__(self) -> str:
        return f"FileMetadata(name_len={len(self.name)}, declared_type={self.declared_type!r})"


@dataclass(frozen=True, slots=True)
class EncryptedMetadata:
    """Independently encrypted name and declared type tokens."""

    name: str
    declared_type: str

    def __repr__(self) -> str:
        return "EncryptedMetadata(...)"


class MetadataCodec:
    """
    Encrypt and decrypt file metadata with the content key.

    Usage:
        codec = MetadataCodec()
        sealed = codec.encrypt_metadata(key, FileMetadata("report.pdf", "application/pdf"))
        meta = codec.decrypt_metadata(key, sealed)
    """

    __slots__ = ("_cipher",)

    def __init__(self) -> None:
        self._cipher = AesGcmCipher()

    def encrypt_field(self, key: KeyLike, text: str) -> str:
        """Encrypt one string into a base64 token with a fresh nonce."""
        result = self._cipher.encrypt(text.encode("utf-8"), key_bytes(key))
        return base64.b64encode(result.combined()).decode("ascii")

    def decrypt_field(self, key: KeyLike, token: str) -> str:
        """
        Decrypt one base64 token.

        Raises:
            TruncatedInput: If the token is not base64 or too short
            AuthenticationFailed: If the tag does not verify or the
                plaintext is not UTF-8
        """
        if not isinstance(token, str):
            raise TruncatedInput("Metadata token must be a string")
        try:
            combined = base64.b64decode(token.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise TruncatedInput("Metadata token is not valid base64") from None

        if len(combined) < AES_NONCE_SIZE + AES_TAG_SIZE:
            raise TruncatedInput("Metadata token shorter than nonce + tag")

        plaintext = self._cipher.open_combined(combined, key_bytes(key))
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise AuthenticationFailed("Metadata plaintext is not UTF-8") from None

    def encrypt_metadata(self, key: KeyLike, metadata: FileMetadata) -> EncryptedMetadata:
        """Encrypt name and declared type under independent nonces."""
        return EncryptedMetadata(
            name=self.encrypt_field(key, metadata.name),
            declared_type=self.encrypt_field(key, metadata.declared_type or ""),
        )

    def decrypt_metadata(self, key: KeyLike, sealed: EncryptedMetadata) -> FileMetadata:
        """
        Decrypt both fields. Any failure aborts the whole call.

        Raises:
            TruncatedInput: If a token is malformed
            AuthenticationFailed: If a token fails verification
        """
        name = self.decrypt_field(key, sealed.name)
        declared_type = self.decrypt_field(key, sealed.declared_type)
        return FileMetadata(name=name, declared_type=declared_type or GENERIC_CONTENT_TYPE)
