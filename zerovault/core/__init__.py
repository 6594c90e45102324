"""
Core module - Configuration, logging, errors and the encryption pipeline.
"""

from zerovault.core.config import VaultConfig
from zerovault.core.errors import ErrorTag, VaultError
from zerovault.core.logging import SecureLogFilter, get_secure_logger

__all__ = ["VaultConfig", "ErrorTag", "VaultError", "get_secure_logger", "SecureLogFilter"]
