"""
Utils module - Validation helpers used throughout ZeroVault.
"""

from zerovault.utils.validators import ValidationError, validate_hex, validate_string_safe

__all__ = [
    "ValidationError",
    "validate_hex",
    "validate_string_safe",
]
