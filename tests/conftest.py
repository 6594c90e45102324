"""Shared fixtures for ZeroVault tests.

Key derivation runs PBKDF2 with 100,000 iterations, so derived keys are
computed once per session. Collaborators of the preview orchestrator are
replaced by small in-process fakes.
"""

from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher

from zerovault.core.crypto.kdf import ContentKey, KeyDerivationService, derive_master_key
from zerovault.core.errors import AccessDenied
from zerovault.core.logging import configure_logging
from zerovault.security.access import AccessGrant

USER_ID = "user_2f9a1c7e4b"
OTHER_USER_ID = "user_99d0e1aa03"
REAUTH_PROOF = "correct horse battery staple"
MASTER_SALT_HEX = "a1" * 16


class FakeAccessGate:
    """Accepts a single proof and records every grant it issues and releases."""

    def __init__(self, proof: str = REAUTH_PROOF, ttl_seconds: int = 60):
        self.proof = proof
        self.ttl = timedelta(seconds=ttl_seconds)
        self.requests = []
        self.released = []

    def request_access(self, file_id, reauth_proof):
        self.requests.append(file_id)
        if reauth_proof != self.proof:
            raise AccessDenied()
        return AccessGrant(
            file_id=file_id,
            token=f"grant-{len(self.requests)}",
            expires_at=datetime.now(timezone.utc) + self.ttl,
        )

    def release(self, grant):
        self.released.append(grant)


@pytest.fixture(scope="session")
def user_id():
    return USER_ID


@pytest.fixture(scope="session")
def content_key_bytes():
    """Raw content key for USER_ID, derived once."""
    with KeyDerivationService().derive_content_key(USER_ID) as key:
        return bytes(key.material)


@pytest.fixture
def content_key(content_key_bytes):
    """Fresh ContentKey per test (tests may wipe it)."""
    return ContentKey(content_key_bytes)


@pytest.fixture(scope="session")
def master_key_bytes():
    with derive_master_key("vault master password", MASTER_SALT_HEX) as key:
        return bytes(key.material)


@pytest.fixture
def master_key(master_key_bytes):
    return ContentKey(master_key_bytes)


@pytest.fixture
def fake_gate():
    return FakeAccessGate()


@pytest.fixture(scope="session")
def fast_hasher():
    """Argon2id with minimal cost parameters for tests."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def reset_logging():
    """Restore default logging settings after a test reconfigures them."""
    yield
    configure_logging()
