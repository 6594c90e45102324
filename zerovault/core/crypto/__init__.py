"""
ZeroVault Cryptographic Core
============================

Client-side authenticated encryption for the vault.

Architecture:
    1. PBKDF2-HMAC-SHA256: content key from the stable account identifier
    2. AES-256-GCM: all symmetric encryption
    3. Chunked framing: bounded-memory body encryption
    4. DEK envelope: per-note keys wrapped under a password master key

Security Properties:
    - All encryption is authenticated (AEAD)
    - Keys never touch disk (memory-only, wipeable)
    - Fresh random nonce per encryption call
    - Fail-closed decryption: no partial plaintext

WARNING: This module handles sensitive cryptographic material.
"""

from zerovault.core.crypto.aes_gcm import AesGcmCipher
from zerovault.core.crypto.chunked import (
    ChunkedCipherEngine,
    EncryptedBlob,
    FileEncryptionProgress,
    Framing,
)
from zerovault.core.crypto.envelope import WrappedKey, generate_dek, unwrap_dek, wrap_dek
from zerovault.core.crypto.kdf import (
    ContentKey,
    KeyDerivationService,
    derive_content_key,
    derive_master_key,
)

__all__ = [
    "AesGcmCipher",
    "ChunkedCipherEngine",
    "EncryptedBlob",
    "FileEncryptionProgress",
    "Framing",
    "WrappedKey",
    "generate_dek",
    "unwrap_dek",
    "wrap_dek",
    "ContentKey",
    "KeyDerivationService",
    "derive_content_key",
    "derive_master_key",
]
