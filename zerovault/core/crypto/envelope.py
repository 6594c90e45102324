"""
Data-Encryption-Key Envelope
============================

Random per-item data encryption keys (DEKs) wrapped under a master key,
as used for encrypted notes.

Wire format (hex, matching the browser client):
    wrapped_hex = AES-GCM(master, iv, raw_dek) ciphertext || tag
    iv_hex      = 12-byte nonce
"""

from __future__ import annotations

from dataclasses import dataclass

from zerovault.core.crypto.aes_gcm import AES_KEY_SIZE, AesGcmCipher
from zerovault.core.crypto.kdf import ContentKey
from zerovault.core.errors import AuthenticationFailed, TruncatedInput
from zerovault.core.memory import secure_zero
from zerovault.utils.validators import ValidationError, validate_hex


@dataclass(frozen=True, slots=True)
class WrappedKey:
    """A DEK encrypted under a master key."""

    wrapped_hex: str
    iv_hex: str

    def to_token(self) -> str:
        """Serialize as "<wrapped_hex>:<iv_hex>"."""
        return f"{self.wrapped_hex}:{self.iv_hex}"

    @classmethod
    def from_token(cls, token: str) -> "WrappedKey":
        wrapped_hex, sep, iv_hex = token.partition(":")
        if not sep or not wrapped_hex or not iv_hex:
            raise TruncatedInput("Wrapped key token is malformed")
        return cls(wrapped_hex=wrapped_hex, iv_hex=iv_hex)

    def __repr__(self) -> str:
        return "WrappedKey(...)"


def generate_dek() -> ContentKey:
    """Generate a fresh random AES-256 data encryption key."""
    material = bytearray(AesGcmCipher.generate_key())
    key = ContentKey(material)
    secure_zero(material)
    return key


def wrap_dek(master_key: ContentKey, dek: ContentKey) -> WrappedKey:
    """Encrypt a DEK under the master key with a fresh nonce."""
    result = AesGcmCipher().encrypt(dek.material, master_key.material)
    return WrappedKey(wrapped_hex=result.ciphertext.hex(), iv_hex=result.nonce.hex())


def unwrap_dek(master_key: ContentKey, wrapped: WrappedKey) -> ContentKey:
    """
    Recover a DEK.

    Raises:
        TruncatedInput: If the hex fields are malformed
        AuthenticationFailed: If the master key is wrong or the wrap was altered
    """
    try:
        ciphertext = validate_hex(wrapped.wrapped_hex, field_name="wrapped")
        iv = validate_hex(wrapped.iv_hex, field_name="iv")
    except ValidationError:
        raise TruncatedInput("Wrapped key is not valid hex") from None

    if len(iv) != 12:
        raise TruncatedInput("Wrapped key nonce has the wrong size")

    raw = bytearray(AesGcmCipher().decrypt(ciphertext, iv, master_key.material))
    try:
        if len(raw) != AES_KEY_SIZE:
            raise AuthenticationFailed("Unwrapped key has the wrong size")
        return ContentKey(raw)
    finally:
        secure_zero(raw)
