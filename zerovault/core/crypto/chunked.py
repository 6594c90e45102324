"""
Chunked AES-256-GCM Body Encryption
===================================

Encrypts arbitrary-length file bodies in fixed-size chunks so peak memory
stays bounded while each chunk is independently authenticated.

Framing (CHUNKED_V1):
    blob = base_nonce(12) || chunk_0 || chunk_1 || ... || chunk_n

    chunk_i     = AES-GCM(key, nonce_i, plaintext_i, aad_i)  (len + 16-byte tag)
    nonce_i     = base_nonce[:8] || uint32_le(i)
    aad_i       = b"zerovault-chunk" || base_nonce || (0x01 if i == n else 0x00)

    Every chunk except the last holds exactly `chunk_size` plaintext bytes.
    Empty plaintext is encoded as a single empty final chunk, so every blob
    carries at least one tag (minimum blob size 12 + 16 bytes).

    The nonce counter binds each chunk to its position (no reordering) and
    the final flag binds the end of the stream (no silent truncation at a
    chunk boundary). The full base nonce is authenticated as well, since its
    last four bytes do not otherwise reach any chunk nonce.

Framing (LEGACY, read-only):
    Same layout without associated data, as written by the earlier browser
    client. Truncation at a chunk boundary is not detectable in this framing.
    That client writes an empty file as the bare 12-byte base nonce with no
    chunks at all; such a blob decrypts to empty plaintext, unauthenticated.

Decryption verifies every chunk into a private buffer and only hands the
plaintext to the caller once all chunks have passed.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Callable, Final, Iterator, Optional

from zerovault.core.config import DEFAULT_CHUNK_SIZE, CipherConfig
from zerovault.core.crypto.aes_gcm import (
    AES_NONCE_SIZE,
    AES_TAG_SIZE,
    MAX_CHUNK_INDEX,
    AesGcmCipher,
    chunk_nonce,
)
from zerovault.core.crypto.kdf import KeyLike, key_bytes
from zerovault.core.errors import TruncatedInput, VaultError
from zerovault.core.logging import get_secure_logger
from zerovault.core.memory import SecureMemoryBuffer, secure_zero

logger = get_secure_logger(__name__)

MIN_BLOB_SIZE: Final[int] = AES_NONCE_SIZE + AES_TAG_SIZE
MIN_LEGACY_BLOB_SIZE: Final[int] = AES_NONCE_SIZE
CHUNK_AAD_PREFIX: Final[bytes] = b"zerovault-chunk"

class Framing(str, Enum):
    """Chunk framing policy recorded on every blob."""
    CHUNKED_V1 = "aes-gcm-chunked-v1"
    LEGACY = "aes-gcm-chunked-legacy"


@dataclass(frozen=True, slots=True)
class FileEncryptionProgress:
    """Progress report handed to the optional callback after every chunk."""

    loaded: int
    total: int
    percentage: int


ProgressCallback = Callable[[FileEncryptionProgress], None]


def _progress(loaded: int, total: int) -> FileEncryptionProgress:
    percentage = 100 if total <= 0 else min(100, round(loaded * 100 / total))
    return FileEncryptionProgress(loaded=loaded, total=total, percentage=percentage)


@dataclass(frozen=True, slots=True)
class EncryptedBlob:
    """
    At-rest representation of an encrypted file body.

    Attributes:
        iv: 96-bit base nonce
        ciphertext: Concatenated chunk ciphertexts, each with its tag
        chunk_size: Plaintext bytes per chunk used when encrypting
        framing: Framing policy needed to decrypt
    """

    iv: bytes
    ciphertext: bytes
    chunk_size: int = DEFAULT_CHUNK_SIZE
    framing: Framing = Framing.CHUNKED_V1

    @property
    def chunk_count(self) -> int:
        encrypted_chunk = self.chunk_size + AES_TAG_SIZE
        return -(-len(self.ciphertext) // encrypted_chunk)

    def __len__(self) -> int:
        return AES_NONCE_SIZE + len(self.ciphertext)

    def to_bytes(self) -> bytes:
        """Serialize as base_nonce || chunks."""
        return self.iv + self.ciphertext

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        framing: Framing = Framing.CHUNKED_V1,
    ) -> "EncryptedBlob":
        """
        Parse a serialized blob.

        Raises:
            TruncatedInput: If the data cannot hold a nonce and one tag
                (a nonce alone for LEGACY framing)
        """
        min_size = MIN_LEGACY_BLOB_SIZE if framing is Framing.LEGACY else MIN_BLOB_SIZE
        if len(data) < min_size:
            raise TruncatedInput("Blob shorter than nonce + tag")
        return cls(
            iv=bytes(data[:AES_NONCE_SIZE]),
            ciphertext=bytes(data[AES_NONCE_SIZE:]),
            chunk_size=chunk_size,
            framing=framing,
        )

    def __repr__(self) -> str:
        return (
            f"EncryptedBlob(size={len(self)}, chunks={self.chunk_count}, "
            f"framing={self.framing.value})"
        )


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read up to `size` bytes, looping over short reads until EOF."""
    parts = []
    remaining = size
    while remaining > 0:
        part = stream.read(remaining)
        if not part:
            break
        parts.append(part)
        remaining -= len(part)
    return b"".join(parts)


def _stream_size(stream: BinaryIO) -> int:
    """Remaining bytes in a seekable stream, 0 when unknown."""
    try:
        if not stream.seekable():
            return 0
        position = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(position)
        return end - position
    except (AttributeError, OSError):
        return 0


def _iter_chunks(
    source: bytes | bytearray | memoryview | BinaryIO,
    chunk_size: int,
) -> Iterator[tuple[bytes | memoryview, bool]]:
    """
    Yield (chunk, is_final) pairs. Always yields at least one chunk.

    Streams are read one chunk ahead so the final chunk is known before it
    is encrypted.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        total = len(view)
        if total == 0:
            yield b"", True
            return
        for offset in range(0, total, chunk_size):
            yield view[offset:offset + chunk_size], offset + chunk_size >= total
        return

    current = _read_exact(source, chunk_size)
    while True:
        upcoming = _read_exact(source, chunk_size) if len(current) == chunk_size else b""
        yield current, not upcoming
        if not upcoming:
            return
        current = upcoming


def _chunk_aad(framing: Framing, base_nonce: bytes, is_final: bool) -> Optional[bytes]:
    if framing is Framing.LEGACY:
        return None
    return CHUNK_AAD_PREFIX + base_nonce + (b"\x01" if is_final else b"\x00")


class ChunkedCipherEngine:
    """
    Authenticated chunked encryption of file bodies.

    Usage:
        engine = ChunkedCipherEngine()

        blob = engine.encrypt_stream(key, open("report.pdf", "rb"))
        plaintext = engine.decrypt_stream(key, blob)

    The engine performs no network or disk I/O beyond reading the stream
    it is given.
    """

    __slots__ = ("_cipher", "_chunk_size")

    def __init__(self, config: Optional[CipherConfig] = None) -> None:
        self._cipher = AesGcmCipher()
        self._chunk_size = (config or CipherConfig()).chunk_size

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def encrypt_stream(
        self,
        key: KeyLike,
        plaintext: bytes | bytearray | memoryview | BinaryIO,
        progress: Optional[ProgressCallback] = None,
    ) -> EncryptedBlob:
        """
        Encrypt a byte string or binary stream.

        A fresh random base nonce is drawn on every call, so encrypting the
        same plaintext twice yields different blobs.

        Args:
            key: Content key
            plaintext: Bytes or a readable binary stream
            progress: Optional callback invoked after every chunk

        Returns:
            EncryptedBlob

        Raises:
            ValueError: If the plaintext needs more than 2^32 chunks
        """
        raw_key = key_bytes(key)
        base_nonce = self._cipher.generate_nonce()
        framing = Framing.CHUNKED_V1

        if isinstance(plaintext, (bytes, bytearray, memoryview)):
            total = len(plaintext)
        else:
            total = _stream_size(plaintext)

        parts: list[bytes] = []
        loaded = 0
        for index, (chunk, is_final) in enumerate(_iter_chunks(plaintext, self._chunk_size)):
            if index > MAX_CHUNK_INDEX:
                raise ValueError("Plaintext exceeds the maximum number of chunks")
            result = self._cipher.encrypt(
                chunk,
                raw_key,
                aad=_chunk_aad(framing, base_nonce, is_final),
                nonce=chunk_nonce(base_nonce, index),
            )
            parts.append(result.ciphertext)
            loaded += len(chunk)
            if progress is not None:
                progress(_progress(loaded, max(total, loaded)))

        blob = EncryptedBlob(
            iv=base_nonce,
            ciphertext=b"".join(parts),
            chunk_size=self._chunk_size,
            framing=framing,
        )
        logger.debug("Encrypted body: %d bytes in %d chunks", loaded, len(parts))
        return blob

    def decrypt_into_buffer(
        self,
        key: KeyLike,
        blob: EncryptedBlob,
        progress: Optional[ProgressCallback] = None,
    ) -> SecureMemoryBuffer:
        """
        Decrypt a blob into a wipeable buffer owned by the caller.

        Raises:
            TruncatedInput: If the blob or its last chunk cannot hold a tag
            AuthenticationFailed: If any chunk fails verification
        """
        legacy_empty = blob.framing is Framing.LEGACY and not blob.ciphertext
        if len(blob.iv) != AES_NONCE_SIZE or (len(blob.ciphertext) < AES_TAG_SIZE and not legacy_empty):
            raise TruncatedInput("Blob shorter than nonce + tag")
        if blob.chunk_size <= 0:
            raise TruncatedInput("Blob has an invalid chunk size")

        raw_key = key_bytes(key)
        encrypted_chunk = blob.chunk_size + AES_TAG_SIZE
        data = memoryview(blob.ciphertext)
        total = len(data)
        chunk_count = blob.chunk_count
        if chunk_count - 1 > MAX_CHUNK_INDEX:
            raise TruncatedInput("Blob exceeds the maximum number of chunks")
        if 0 < total % encrypted_chunk < AES_TAG_SIZE:
            raise TruncatedInput("Final chunk shorter than a tag")

        out = bytearray()
        try:
            for index in range(chunk_count):
                offset = index * encrypted_chunk
                piece = data[offset:offset + encrypted_chunk]
                is_final = index == chunk_count - 1
                out += self._cipher.decrypt(
                    piece,
                    chunk_nonce(blob.iv, index),
                    raw_key,
                    aad=_chunk_aad(blob.framing, blob.iv, is_final),
                )
                if progress is not None:
                    progress(_progress(offset + len(piece), total))
        except VaultError:
            secure_zero(out)
            logger.warning("Body decryption rejected (%d chunks)", chunk_count)
            raise
        except BaseException:
            secure_zero(out)
            raise

        return SecureMemoryBuffer.adopt(out)

    def decrypt_stream(
        self,
        key: KeyLike,
        blob: EncryptedBlob,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """
        Decrypt a blob and return the plaintext.

        Nothing is returned unless every chunk authenticates.

        Raises:
            TruncatedInput: If the blob is too short
            AuthenticationFailed: If any chunk fails verification
        """
        with self.decrypt_into_buffer(key, blob, progress) as buffer:
            return buffer.to_bytes()
