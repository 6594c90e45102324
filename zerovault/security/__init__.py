"""
Security module - Access control and audit.

Security Considerations:
- File content is only fetched with a fresh, short-lived grant
- Credential hashes use Argon2id (argon2-cffi)
- Audit events never carry secrets or plaintext
"""

from zerovault.security.access import (
    AccessGate,
    AccessGrant,
    CredentialAccessGate,
    check_grant,
)
from zerovault.security.audit import (
    AuditSink,
    ChainedAuditSink,
    InMemoryAuditSink,
    LoggingAuditSink,
    PreviewEvent,
)

__all__ = [
    "AccessGate",
    "AccessGrant",
    "CredentialAccessGate",
    "check_grant",
    "AuditSink",
    "ChainedAuditSink",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "PreviewEvent",
]
