"""
ZeroVault - Client-Side Vault Encryption
========================================

Encryption engine and secure preview pipeline for a zero-knowledge
file and notes vault: the server only ever stores ciphertext.

Security Notice:
- No secrets are logged
- Fail-closed decryption
- Decrypted content is held in wipeable memory, never on disk
"""

from zerovault.core.config import VaultConfig
from zerovault.core.logging import configure_logging, get_secure_logger

__version__ = "0.1.0"
__author__ = "ZeroVault Team"

__all__ = ["VaultConfig", "configure_logging", "get_secure_logger", "__version__"]
