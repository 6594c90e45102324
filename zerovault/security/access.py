"""
Access Gate
===========

Re-authentication before any file content is fetched.

Every preview asks the gate for a fresh, short-lived grant. Grants are
never cached by the caller: one grant serves one request and is released
when that request ends.

The reference gate verifies a re-authentication proof against the
account's PRIMARY credential (Argon2id via argon2-cffi). The account's
secondary credential only unlocks the vault session and is explicitly
refused here.

Security Properties:
- Constant-time hash verification (argon2-cffi)
- Grant tokens are 256-bit random; only their SHA-256 is kept
- Grants expire after a short TTL and are released after one request
"""

from __future__ import annotations

import hashlib
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Final, Optional, Protocol, runtime_checkable

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from zerovault.core.errors import AccessDenied
from zerovault.core.logging import get_secure_logger

logger = get_secure_logger(__name__)

DEFAULT_GRANT_TTL: Final[int] = 60  # seconds
GRANT_TOKEN_LENGTH: Final[int] = 32  # bytes
MAX_PROOF_LENGTH: Final[int] = 1024

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class AccessGrant:
    """
    Short-lived credential authorizing one fetch of one file.

    The token is opaque to everything except the gate that issued it.
    """

    file_id: str
    token: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def __repr__(self) -> str:
        return f"AccessGrant(file_id={self.file_id!r}, expires_at={self.expires_at.isoformat()})"


@runtime_checkable
class AccessGate(Protocol):
    """Issues grants after re-authentication."""

    def request_access(self, file_id: str, reauth_proof: str) -> AccessGrant:
        """Raises AccessDenied when the proof is rejected."""
        ...

    def release(self, grant: AccessGrant) -> None:
        """Invalidate a grant once its request is over."""
        ...


def check_grant(grant: AccessGrant, file_id: str, now: Optional[datetime] = None) -> None:
    """
    Structural grant check usable by any store.

    Raises:
        AccessDenied: If the grant is for another file or has expired
    """
    if not isinstance(grant, AccessGrant) or grant.file_id != file_id:
        raise AccessDenied("Grant does not cover this file")
    if grant.is_expired(now):
        raise AccessDenied("Grant has expired")


class CredentialAccessGate:
    """
    Reference gate backed by Argon2id credential hashes.

    Usage:
        gate = CredentialAccessGate.from_passwords(primary="vault-pass", secondary="login-pass")
        grant = gate.request_access(file_id, reauth_proof="vault-pass")
        gate.check(grant, file_id)
        gate.release(grant)

    Security Notes:
        - The secondary credential is refused even though it is valid for login
        - Grants are held as token hashes only
    """

    __slots__ = ("_primary_hash", "_secondary_hash", "_hasher", "_ttl", "_clock", "_grants", "_lock")

    def __init__(
        self,
        primary_hash: str,
        secondary_hash: Optional[str] = None,
        hasher: Optional[PasswordHasher] = None,
        ttl_seconds: int = DEFAULT_GRANT_TTL,
        clock: Optional[Clock] = None,
    ) -> None:
        """
        Args:
            primary_hash: Encoded Argon2id hash of the primary credential
            secondary_hash: Encoded hash of the secondary credential, if any
            hasher: argon2-cffi PasswordHasher (default parameters if omitted)
            ttl_seconds: Grant lifetime
            clock: Source of the current UTC time
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._primary_hash = primary_hash
        self._secondary_hash = secondary_hash
        self._hasher = hasher or PasswordHasher()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or _utcnow
        self._grants: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_passwords(
        cls,
        primary: str,
        secondary: Optional[str] = None,
        hasher: Optional[PasswordHasher] = None,
        **kwargs,
    ) -> "CredentialAccessGate":
        """Build a gate by hashing plaintext credentials."""
        hasher = hasher or PasswordHasher()
        return cls(
            primary_hash=hasher.hash(primary),
            secondary_hash=hasher.hash(secondary) if secondary else None,
            hasher=hasher,
            **kwargs,
        )

    @staticmethod
    def _hash_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def _verify(self, encoded: Optional[str], proof: str) -> bool:
        if not encoded:
            return False
        try:
            return self._hasher.verify(encoded, proof)
        except (VerificationError, InvalidHashError):
            return False

    def request_access(self, file_id: str, reauth_proof: str) -> AccessGrant:
        """
        Verify the proof and issue a grant.

        Raises:
            AccessDenied: If the proof is missing, wrong, or is the
                secondary credential
        """
        if not isinstance(reauth_proof, str) or not reauth_proof or len(reauth_proof) > MAX_PROOF_LENGTH:
            logger.warning("Access refused for file %s: malformed proof", file_id)
            raise AccessDenied()

        if not self._verify(self._primary_hash, reauth_proof):
            if self._verify(self._secondary_hash, reauth_proof):
                logger.warning("Access refused for file %s: secondary credential used", file_id)
                raise AccessDenied("Secondary credential cannot authorize file access")
            logger.warning("Access refused for file %s: verification failed", file_id)
            raise AccessDenied()

        token = secrets.token_urlsafe(GRANT_TOKEN_LENGTH)
        expires_at = self._clock() + self._ttl
        with self._lock:
            self._purge_expired()
            self._grants[self._hash_token(token)] = (file_id, expires_at)

        logger.info("Access granted for file %s", file_id)
        return AccessGrant(file_id=file_id, token=token, expires_at=expires_at)

    def check(self, grant: AccessGrant, file_id: str) -> None:
        """
        Verify that a grant was issued here, is live and covers `file_id`.

        Raises:
            AccessDenied: Otherwise
        """
        check_grant(grant, file_id, self._clock())
        with self._lock:
            entry = self._grants.get(self._hash_token(grant.token))
        if entry is None or entry[0] != file_id:
            raise AccessDenied("Grant is not valid")

    def release(self, grant: AccessGrant) -> None:
        with self._lock:
            self._grants.pop(self._hash_token(grant.token), None)

    @property
    def active_grants(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._grants)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._grants.items() if now >= expires_at]
        for key in expired:
            del self._grants[key]
