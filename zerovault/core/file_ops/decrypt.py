"""
File Decryption Module
======================

Reverses FileEncryptor on retrieval.

Security Properties:
- Every chunk authenticated BEFORE any content is returned
- Fail-closed design (any error = complete failure)
- Metadata decrypted independently of the body
- Decrypted content lives in a wipeable buffer

Decryption Flow:
1. Derive the content key from the stable identifier
2. Decrypt and verify metadata
3. Decrypt and verify every body chunk
4. Wipe the content key
5. Return plaintext only if all checks pass

There is deliberately no decrypt-to-disk helper: plaintext is never
written to storage by this package.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from zerovault.core.crypto.chunked import ChunkedCipherEngine, ProgressCallback
from zerovault.core.crypto.kdf import KeyDerivationService
from zerovault.core.file_ops.encrypt import EncryptedFile
from zerovault.core.file_ops.metadata import FileMetadata, MetadataCodec
from zerovault.core.logging import get_secure_logger
from zerovault.core.memory import SecureMemoryBuffer

logger = get_secure_logger(__name__)


@dataclass(slots=True)
class DecryptedFile:
    """
    Decrypted content and metadata.

    Use as a context manager so the content is wiped when done.
    """

    content: SecureMemoryBuffer
    metadata: FileMetadata

    def get_content(self) -> bytes:
        """Copy content out as immutable bytes."""
        return self.content.to_bytes()

    def view(self) -> memoryview:
        """Read-only view over the content (no copy)."""
        return self.content.view()

    @property
    def is_wiped(self) -> bool:
        return self.content.is_wiped

    def secure_wipe(self) -> None:
        self.content.wipe()

    def __enter__(self) -> "DecryptedFile":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.secure_wipe()

    def __repr__(self) -> str:
        if self.content.is_wiped:
            return "DecryptedFile(WIPED)"
        return f"DecryptedFile(size={self.content.size}, declared_type={self.metadata.declared_type!r})"


class FileDecryptor:
    """
    Decrypt files fetched from storage.

    Usage:
        decryptor = FileDecryptor()

        with decryptor.decrypt(encrypted, user_id) as result:
            process(result.view())
            print(result.metadata.name)
        # Content is wiped on exit

        # Metadata only (no body decryption)
        meta = decryptor.decrypt_metadata(encrypted, user_id)

    Security Notes:
        - NEVER returns partial content on failure
        - Errors are the engine's taxonomy (TruncatedInput,
          AuthenticationFailed, InvalidKeyMaterial)
    """

    __slots__ = ("_keys", "_engine", "_codec")

    def __init__(
        self,
        key_service: Optional[KeyDerivationService] = None,
        engine: Optional[ChunkedCipherEngine] = None,
        codec: Optional[MetadataCodec] = None,
    ) -> None:
        self._keys = key_service or KeyDerivationService()
        self._engine = engine or ChunkedCipherEngine()
        self._codec = codec or MetadataCodec()

    def decrypt(
        self,
        encrypted: EncryptedFile,
        stable_user_id: str,
        progress: Optional[ProgressCallback] = None,
    ) -> DecryptedFile:
        """
        Decrypt body and metadata.

        Raises:
            InvalidKeyMaterial: If the identifier is unusable
            TruncatedInput: If the body or a token is malformed
            AuthenticationFailed: If anything fails verification
        """
        with self._keys.derive_content_key(stable_user_id) as key:
            metadata = self._codec.decrypt_metadata(key, encrypted.metadata)
            content = self._engine.decrypt_into_buffer(key, encrypted.blob, progress)

        logger.debug("Decrypted file: %d bytes", content.size)
        return DecryptedFile(content=content, metadata=metadata)

    def decrypt_file(
        self,
        source_path: Path | str,
        stable_user_id: str,
    ) -> DecryptedFile:
        """Decrypt a container saved with EncryptedFile.save()."""
        source_path = Path(source_path)

        if not source_path.exists():
            raise FileNotFoundError(f"File not found: {source_path}")

        return self.decrypt(EncryptedFile.load(source_path), stable_user_id)

    def decrypt_metadata(self, encrypted: EncryptedFile, stable_user_id: str) -> FileMetadata:
        """Decrypt only the metadata, e.g. for listing files."""
        with self._keys.derive_content_key(stable_user_id) as key:
            return self._codec.decrypt_metadata(key, encrypted.metadata)


def decrypt_bytes(
    encrypted: EncryptedFile,
    stable_user_id: str,
) -> tuple[bytes, FileMetadata]:
    """
    Convenience function to decrypt an EncryptedFile to bytes.

    Note:
        The returned bytes cannot be wiped. Prefer FileDecryptor with the
        context manager for sensitive content.
    """
    with FileDecryptor().decrypt(encrypted, stable_user_id) as result:
        return result.get_content(), result.metadata
