"""
Key Derivation
==============

Derives the per-account content key used for file bodies and metadata,
and password-based master keys used by the key envelope.

Content key derivation:
    PBKDF2-HMAC-SHA256(
        password = stable_user_id right-padded with "0" to 32 chars,
        salt = b"vault-salt",
        iterations = 100_000,
    ) -> 32-byte AES-256 key

The padding, salt and iteration count match vaults written by the original
browser client, so existing ciphertext stays decryptable.

SECURITY WARNING:
    The content key depends only on the stable user identifier and a
    hardcoded salt. Anyone who knows or guesses the identifier can rebuild
    the key. This is an inherited property of the vault format and is kept
    as-is: changing the derivation changes the security model and makes
    existing data unrecoverable. It must be resolved with stakeholders,
    not silently in code.
"""

from __future__ import annotations

import hmac
import warnings
from typing import Final, Optional, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from zerovault.core.errors import InvalidKeyMaterial
from zerovault.core.logging import get_secure_logger
from zerovault.core.memory import secure_zero
from zerovault.utils.validators import ValidationError, validate_hex, validate_string_safe

logger = get_secure_logger(__name__)

APP_SALT: Final[bytes] = b"vault-salt"
PBKDF2_ITERATIONS: Final[int] = 100_000
CONTENT_KEY_SIZE: Final[int] = 32  # 256 bits
IDENTIFIER_PAD_LENGTH: Final[int] = 32
MAX_IDENTIFIER_LENGTH: Final[int] = 1000
MIN_MASTER_SALT_SIZE: Final[int] = 16


class SecurityWarning(UserWarning):
    """Warning for security-related issues."""
    pass


class ContentKey:
    """
    256-bit symmetric key held in a wipeable buffer.

    Never persisted, never transmitted. Use as a context manager so the
    material is wiped when the operation that derived it finishes:

        with kds.derive_content_key(user_id) as key:
            blob = engine.encrypt_stream(key, data)
    """

    __slots__ = ("_material", "_wiped")

    def __init__(self, material: bytes | bytearray) -> None:
        if len(material) != CONTENT_KEY_SIZE:
            raise InvalidKeyMaterial(f"Content key must be {CONTENT_KEY_SIZE} bytes")
        self._material = bytearray(material)
        self._wiped = False

    @property
    def material(self) -> bytearray:
        """Raw key bytes. Do not copy into long-lived objects."""
        if self._wiped:
            raise InvalidKeyMaterial("Content key has been wiped")
        return self._material

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        if not self._wiped:
            secure_zero(self._material)
            self._wiped = True

    def __len__(self) -> int:
        return CONTENT_KEY_SIZE

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ContentKey):
            return NotImplemented
        return hmac.compare_digest(bytes(self.material), bytes(other.material))

    __hash__ = None  # mutable secret; never use as a dict key

    def __enter__(self) -> "ContentKey":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        if self._wiped:
            return "ContentKey(WIPED)"
        return "ContentKey(bits=256)"


KeyLike = Union[ContentKey, bytes, bytearray]


def key_bytes(key: KeyLike) -> bytes | bytearray:
    """Raw material of a ContentKey, or raw bytes passed through."""
    if isinstance(key, ContentKey):
        return key.material
    return key


def _pbkdf2(secret: bytes, salt: bytes) -> bytearray:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=CONTENT_KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return bytearray(kdf.derive(secret))


class KeyDerivationService:
    """
    Stateless, injectable content-key derivation.

    Callers pass the stable identifier on every call; nothing is cached.
    The same identifier always yields the same key, which is what allows
    the key to never be stored.
    """

    __slots__ = ("_warned",)

    def __init__(self) -> None:
        self._warned = False

    def derive_content_key(self, stable_user_id: str) -> ContentKey:
        """
        Derive the content key for an account.

        Args:
            stable_user_id: Identifier that does not change across sessions

        Returns:
            ContentKey (caller owns it and should wipe it)

        Raises:
            InvalidKeyMaterial: If the identifier is empty or malformed
        """
        try:
            validate_string_safe(
                stable_user_id,
                max_length=MAX_IDENTIFIER_LENGTH,
                field_name="stable_user_id",
            )
            secret = bytearray(stable_user_id.ljust(IDENTIFIER_PAD_LENGTH, "0").encode("utf-8"))
        except (ValidationError, UnicodeEncodeError) as e:
            raise InvalidKeyMaterial(str(e)) from None

        if not self._warned:
            warnings.warn(
                "Content key is derived from the account identifier only; "
                "no user-held secret is involved.",
                SecurityWarning,
                stacklevel=2,
            )
            logger.debug("Deriving content key from identifier-only key material")
            self._warned = True

        try:
            material = _pbkdf2(bytes(secret), APP_SALT)
        finally:
            secure_zero(secret)

        key = ContentKey(material)
        secure_zero(material)
        return key


def derive_content_key(
    stable_user_id: str,
    service: Optional[KeyDerivationService] = None,
) -> ContentKey:
    """Convenience wrapper around KeyDerivationService.derive_content_key."""
    return (service or KeyDerivationService()).derive_content_key(stable_user_id)


def derive_master_key(password: str, salt_hex: str) -> ContentKey:
    """
    Derive a password-based master key for the key envelope.

    Args:
        password: User password (non-empty)
        salt_hex: Hex-encoded per-account salt (at least 16 bytes)

    Raises:
        InvalidKeyMaterial: If password or salt is unusable
    """
    try:
        validate_string_safe(password, max_length=MAX_IDENTIFIER_LENGTH, field_name="password")
        salt = validate_hex(salt_hex, field_name="salt")
        secret = password.encode("utf-8")
    except (ValidationError, UnicodeEncodeError) as e:
        raise InvalidKeyMaterial(str(e)) from None

    if len(salt) < MIN_MASTER_SALT_SIZE:
        raise InvalidKeyMaterial(f"salt must be at least {MIN_MASTER_SALT_SIZE} bytes")

    material = _pbkdf2(secret, salt)
    key = ContentKey(material)
    secure_zero(material)
    return key
