"""
AES-256-GCM Authenticated Encryption
====================================

Thin wrapper over the `cryptography` AESGCM primitive used by the chunked
body engine, the metadata codec and the key envelope.

Security Properties:
    - 256-bit key
    - 96-bit nonce (NIST recommended)
    - 128-bit authentication tag, appended to the ciphertext
    - Authenticated Additional Data (AAD) support

WARNING:
    - Never reuse (key, nonce) pairs
    - Plaintext is only returned after the tag verifies
"""

from __future__ import annotations

import hmac
import secrets
import struct
from dataclasses import dataclass
from typing import Final, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from zerovault.core.errors import AuthenticationFailed, TruncatedInput

AES_KEY_SIZE: Final[int] = 32  # 256 bits
AES_NONCE_SIZE: Final[int] = 12  # 96 bits
AES_TAG_SIZE: Final[int] = 16  # 128 bits

# Chunk nonces keep the first 8 bytes of the base nonce and
# replace the last 4 with the little-endian chunk index
CHUNK_NONCE_PREFIX: Final[int] = 8
MAX_CHUNK_INDEX: Final[int] = 0xFFFFFFFF


@dataclass(frozen=True, slots=True)
class AesGcmResult:
    """
    Immutable result of AES-GCM encryption.

    Attributes:
        ciphertext: Encrypted data with appended authentication tag
        nonce: Nonce used for this encryption (stored with the ciphertext)
    """

    ciphertext: bytes
    nonce: bytes

    def combined(self) -> bytes:
        """nonce || ciphertext || tag"""
        return self.nonce + self.ciphertext

    def __repr__(self) -> str:
        return f"AesGcmResult(ciphertext_len={len(self.ciphertext)}, nonce_len={len(self.nonce)})"


def chunk_nonce(base_nonce: bytes, index: int) -> bytes:
    """
    Derive the nonce for chunk `index` from a base nonce.

    Raises:
        ValueError: If the base nonce has the wrong size or the index
            does not fit the 32-bit counter
    """
    if len(base_nonce) != AES_NONCE_SIZE:
        raise ValueError(f"Nonce must be exactly {AES_NONCE_SIZE} bytes")
    if not 0 <= index <= MAX_CHUNK_INDEX:
        raise ValueError("Chunk index exceeds the 32-bit nonce counter")
    return base_nonce[:CHUNK_NONCE_PREFIX] + struct.pack("<I", index)


class AesGcmCipher:
    """
    AES-256-GCM Authenticated Encryption with Associated Data (AEAD).

    Usage:
        cipher = AesGcmCipher()
        result = cipher.encrypt(plaintext, key, aad=b"context")
        plaintext = cipher.decrypt(result.ciphertext, result.nonce, key, aad=b"context")

    Tag failures surface as AuthenticationFailed, never as the underlying
    library exception.
    """

    __slots__ = ()

    @staticmethod
    def generate_key() -> bytes:
        """Generate a cryptographically secure random AES-256 key."""
        return secrets.token_bytes(AES_KEY_SIZE)

    @staticmethod
    def generate_nonce() -> bytes:
        """
        Generate a cryptographically secure random nonce.

        96-bit random nonces have negligible collision probability for up
        to 2^32 encryptions under the same key.
        """
        return secrets.token_bytes(AES_NONCE_SIZE)

    def encrypt(
        self,
        plaintext: bytes | bytearray | memoryview,
        key: bytes | bytearray,
        aad: Optional[bytes] = None,
        nonce: Optional[bytes] = None,
    ) -> AesGcmResult:
        """
        Encrypt plaintext using AES-256-GCM.

        Args:
            plaintext: Data to encrypt (can be empty)
            key: 32-byte key
            aad: Additional Authenticated Data
            nonce: Explicit nonce (chunk framing only). A fresh random nonce
                is generated when omitted.

        Raises:
            ValueError: If key or nonce has the wrong size
        """
        if len(key) != AES_KEY_SIZE:
            raise ValueError(f"Key must be exactly {AES_KEY_SIZE} bytes")
        if nonce is None:
            nonce = self.generate_nonce()
        elif len(nonce) != AES_NONCE_SIZE:
            raise ValueError(f"Nonce must be exactly {AES_NONCE_SIZE} bytes")

        aesgcm = AESGCM(bytes(key))
        ciphertext = aesgcm.encrypt(nonce, bytes(plaintext), aad)

        return AesGcmResult(ciphertext=ciphertext, nonce=nonce)

    def decrypt(
        self,
        ciphertext: bytes | memoryview,
        nonce: bytes,
        key: bytes | bytearray,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt ciphertext using AES-256-GCM with integrity verification.

        Raises:
            ValueError: If key or nonce has the wrong size
            TruncatedInput: If the ciphertext cannot hold a tag
            AuthenticationFailed: If the tag does not verify
        """
        if len(key) != AES_KEY_SIZE:
            raise ValueError(f"Key must be exactly {AES_KEY_SIZE} bytes")
        if len(nonce) != AES_NONCE_SIZE:
            raise ValueError(f"Nonce must be exactly {AES_NONCE_SIZE} bytes")
        if len(ciphertext) < AES_TAG_SIZE:
            raise TruncatedInput("Ciphertext too short (missing authentication tag)")

        aesgcm = AESGCM(bytes(key))
        try:
            return aesgcm.decrypt(nonce, bytes(ciphertext), aad)
        except InvalidTag:
            raise AuthenticationFailed() from None

    def open_combined(
        self,
        data: bytes,
        key: bytes | bytearray,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """Decrypt a nonce || ciphertext || tag message."""
        if len(data) < AES_NONCE_SIZE + AES_TAG_SIZE:
            raise TruncatedInput()
        return self.decrypt(data[AES_NONCE_SIZE:], data[:AES_NONCE_SIZE], key, aad)

    @staticmethod
    def constant_time_compare(a: bytes, b: bytes) -> bool:
        """Constant-time comparison of two byte strings."""
        return hmac.compare_digest(a, b)
