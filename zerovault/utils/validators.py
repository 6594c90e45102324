"""
Validation Utilities
====================

Input validation functions with security focus.
"""

from __future__ import annotations


class ValidationError(ValueError):
    """Raised when validation fails."""
    pass


def validate_string_safe(
    value: str,
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Validate a string value for safety.

    Args:
        value: The string to validate
        min_length: Minimum allowed length
        max_length: Maximum allowed length
        allow_empty: If False, empty or whitespace-only strings are rejected
        field_name: Name of the field for error messages

    Returns:
        Validated string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string")

    if not allow_empty and not value.strip():
        raise ValidationError(f"{field_name} cannot be empty")

    if len(value) < min_length:
        raise ValidationError(
            f"{field_name} must be at least {min_length} characters"
        )

    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters"
        )

    # Null bytes are never legitimate in identifiers or names
    if "\x00" in value:
        raise ValidationError(f"{field_name} contains invalid characters")

    # Lone surrogates cannot be encoded, so the value could never be hashed
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ValidationError(f"{field_name} is not valid Unicode text") from None

    return value


def validate_hex(value: str, field_name: str = "value") -> bytes:
    """
    Decode an even-length hexadecimal string.

    Raises:
        ValidationError: If the string is not valid hex
    """
    if not isinstance(value, str) or len(value) % 2 != 0:
        raise ValidationError(f"{field_name} must be an even-length hex string")
    try:
        return bytes.fromhex(value)
    except ValueError:
        raise ValidationError(f"{field_name} is not valid hex") from None
