"""
Error Taxonomy
==============

Every failure raised by the engine derives from VaultError and carries a
stable tag. The preview orchestrator maps these tags onto its ERRORED state;
the surrounding UI translates tags into messages.

Security Notice:
- Messages are fixed strings, never key material, plaintext or ciphertext
- Underlying library exceptions are suppressed (raise ... from None)
"""

from __future__ import annotations

from enum import Enum


class ErrorTag(str, Enum):
    """Stable identifiers surfaced to callers."""
    INVALID_KEY_MATERIAL = "invalid_key_material"
    ACCESS_DENIED = "access_denied"
    TRUNCATED_INPUT = "truncated_input"
    AUTHENTICATION_FAILED = "authentication_failed"
    DECRYPTION_FAILED = "decryption_failed"
    UNCLASSIFIABLE_CONTENT = "unclassifiable_content"
    RESOURCE_RELEASE_FAILURE = "resource_release_failure"
    FILE_VALIDATION = "file_validation"
    NOT_FOUND = "not_found"
    TOO_LARGE = "too_large"
    ABORTED = "aborted"
    INTERNAL_ERROR = "internal_error"


class VaultError(Exception):
    """Base class for all engine errors."""

    tag: ErrorTag = ErrorTag.INTERNAL_ERROR
    default_message: str = "Operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def safe_message(self) -> str:
        """Message that is safe to hand to a UI layer."""
        return self.default_message


class InvalidKeyMaterial(VaultError):
    """The stable identifier cannot be used to derive a key."""
    tag = ErrorTag.INVALID_KEY_MATERIAL
    default_message = "Invalid key material"


class AccessDenied(VaultError):
    """The Access Gate refused to issue a grant."""
    tag = ErrorTag.ACCESS_DENIED
    default_message = "Access denied"


class TruncatedInput(VaultError):
    """Ciphertext is shorter than nonce + tag or otherwise malformed."""
    tag = ErrorTag.TRUNCATED_INPUT
    default_message = "Encrypted input is truncated or malformed"


class AuthenticationFailed(VaultError):
    """
    Authentication tag mismatch.

    Treat as tampering or corruption. Never retry and never use any
    partial output.
    """
    tag = ErrorTag.AUTHENTICATION_FAILED
    default_message = "Authentication failed"


class UnclassifiableContent(VaultError):
    """No signature or text heuristic matched. Non-fatal."""
    tag = ErrorTag.UNCLASSIFIABLE_CONTENT
    default_message = "Content type could not be determined"


class ResourceReleaseFailure(VaultError):
    """An ephemeral resource could not be released. Non-fatal, logged."""
    tag = ErrorTag.RESOURCE_RELEASE_FAILURE
    default_message = "Ephemeral resource release failed"


class FileValidationError(VaultError):
    """File rejected before encryption."""
    tag = ErrorTag.FILE_VALIDATION
    default_message = "File rejected"

    @property
    def safe_message(self) -> str:
        # Validation messages only describe limits, never content
        return str(self)


class FileNotFoundInStore(VaultError):
    """The ciphertext store has no record for the requested file id."""
    tag = ErrorTag.NOT_FOUND
    default_message = "File not found"


class PreviewAborted(VaultError):
    """The preview request was cancelled or superseded while in flight."""
    tag = ErrorTag.ABORTED
    default_message = "Preview was cancelled"


class PreviewTooLarge(VaultError):
    """Decrypted content would exceed the preview size limit."""
    tag = ErrorTag.TOO_LARGE
    default_message = "File is too large to preview"
