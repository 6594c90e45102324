"""
Ciphertext Store
================

Holds encrypted bodies and encrypted metadata tokens, never plaintext.

Every fetch presents an AccessGrant; the store checks it covers the
requested file before returning anything. Updates replace a file's blob
wholesale.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Final, List, Optional, Protocol, runtime_checkable

from zerovault.core.crypto.chunked import EncryptedBlob, Framing
from zerovault.core.errors import FileNotFoundInStore
from zerovault.core.file_ops.encrypt import EncryptedFile
from zerovault.core.file_ops.metadata import EncryptedMetadata
from zerovault.core.logging import get_secure_logger
from zerovault.security.access import AccessGrant, check_grant

logger = get_secure_logger(__name__)

Authorizer = Callable[[AccessGrant, str], None]


@dataclass(frozen=True, slots=True)
class StoredFile:
    """Listing entry. Holds no ciphertext and no plaintext metadata."""

    id: str
    user_id: str
    original_size: int
    encrypted_size: int
    chunk_size: int
    framing: Framing
    created_at: datetime


@runtime_checkable
class CiphertextStore(Protocol):
    """Source of encrypted bodies and metadata for the preview pipeline."""

    def fetch_blob(self, file_id: str, grant: AccessGrant) -> EncryptedBlob:
        ...

    def fetch_metadata(self, file_id: str, grant: AccessGrant) -> EncryptedMetadata:
        ...


class InMemoryCiphertextStore:
    """
    Dictionary-backed store.

    Usage:
        store = InMemoryCiphertextStore(authorizer=gate.check)
        record = store.put(user_id, encrypted)
        blob = store.fetch_blob(record.id, grant)
    """

    def __init__(self, authorizer: Optional[Authorizer] = None) -> None:
        self._authorize = authorizer or check_grant
        self._files: dict[str, tuple[StoredFile, EncryptedFile]] = {}
        self._lock = threading.Lock()

    def put(self, user_id: str, encrypted: EncryptedFile, file_id: Optional[str] = None) -> StoredFile:
        """Add a file, or replace it wholesale when `file_id` exists."""
        record = _record_for(user_id, encrypted, file_id)
        with self._lock:
            self._files[record.id] = (record, encrypted)
        logger.debug("Stored file %s (%d bytes)", record.id, record.encrypted_size)
        return record

    def _get(self, file_id: str) -> tuple[StoredFile, EncryptedFile]:
        with self._lock:
            entry = self._files.get(file_id)
        if entry is None:
            raise FileNotFoundInStore()
        return entry

    def fetch_blob(self, file_id: str, grant: AccessGrant) -> EncryptedBlob:
        self._authorize(grant, file_id)
        return self._get(file_id)[1].blob

    def fetch_metadata(self, file_id: str, grant: AccessGrant) -> EncryptedMetadata:
        self._authorize(grant, file_id)
        return self._get(file_id)[1].metadata

    def get_file(self, file_id: str) -> Optional[StoredFile]:
        with self._lock:
            entry = self._files.get(file_id)
        return entry[0] if entry else None

    def list_files(self, user_id: str) -> List[StoredFile]:
        with self._lock:
            records = [record for record, _ in self._files.values() if record.user_id == user_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def delete(self, file_id: str) -> bool:
        with self._lock:
            return self._files.pop(file_id, None) is not None


class SqliteCiphertextStore:
    """
    SQLite-backed store.

    Usage:
        store = SqliteCiphertextStore(db_path, authorizer=gate.check)
        record = store.put(user_id, encrypted)
        for entry in store.list_files(user_id):
            ...
    """

    _SCHEMA: Final[str] = """
    CREATE TABLE IF NOT EXISTS encrypted_files (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        body BLOB NOT NULL,
        name_token TEXT NOT NULL,
        type_token TEXT NOT NULL,
        chunk_size INTEGER NOT NULL,
        framing TEXT NOT NULL,
        original_size INTEGER NOT NULL,
        encrypted_size INTEGER NOT NULL,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_files_user ON encrypted_files(user_id);
    """

    def __init__(self, db_path: Path | str, authorizer: Optional[Authorizer] = None) -> None:
        self._db_path = Path(db_path)
        self._authorize = authorizer or check_grant
        self.initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._get_connection() as conn:
            conn.executescript(self._SCHEMA)
            conn.commit()

    def put(self, user_id: str, encrypted: EncryptedFile, file_id: Optional[str] = None) -> StoredFile:
        """Add a file, or replace it wholesale when `file_id` exists."""
        record = _record_for(user_id, encrypted, file_id)

        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO encrypted_files
                (id, user_id, body, name_token, type_token, chunk_size, framing,
                 original_size, encrypted_size, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                user_id,
                encrypted.blob.to_bytes(),
                encrypted.metadata.name,
                encrypted.metadata.declared_type,
                record.chunk_size,
                record.framing.value,
                record.original_size,
                record.encrypted_size,
                record.created_at.isoformat(),
            ))
            conn.commit()

        logger.debug("Stored file %s (%d bytes)", record.id, record.encrypted_size)
        return record

    def _row(self, file_id: str, columns: str) -> sqlite3.Row:
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {columns} FROM encrypted_files WHERE id = ?", (file_id,)
            ).fetchone()
        if row is None:
            raise FileNotFoundInStore()
        return row

    def fetch_blob(self, file_id: str, grant: AccessGrant) -> EncryptedBlob:
        self._authorize(grant, file_id)
        row = self._row(file_id, "body, chunk_size, framing")
        return EncryptedBlob.from_bytes(
            bytes(row["body"]),
            chunk_size=row["chunk_size"],
            framing=Framing(row["framing"]),
        )

    def fetch_metadata(self, file_id: str, grant: AccessGrant) -> EncryptedMetadata:
        self._authorize(grant, file_id)
        row = self._row(file_id, "name_token, type_token")
        return EncryptedMetadata(name=row["name_token"], declared_type=row["type_token"])

    def get_file(self, file_id: str) -> Optional[StoredFile]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM encrypted_files WHERE id = ?", (file_id,)
            ).fetchone()
        return self._row_to_file(row) if row else None

    def list_files(self, user_id: str) -> List[StoredFile]:
        """List all files for a user, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM encrypted_files
                WHERE user_id = ?
                ORDER BY created_at DESC
            """, (user_id,)).fetchall()

        return [self._row_to_file(row) for row in rows]

    def delete(self, file_id: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM encrypted_files WHERE id = ?", (file_id,))
            conn.commit()
            return cursor.rowcount > 0

    def _row_to_file(self, row: sqlite3.Row) -> StoredFile:
        return StoredFile(
            id=row["id"],
            user_id=row["user_id"],
            original_size=row["original_size"],
            encrypted_size=row["encrypted_size"],
            chunk_size=row["chunk_size"],
            framing=Framing(row["framing"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


def _record_for(user_id: str, encrypted: EncryptedFile, file_id: Optional[str]) -> StoredFile:
    return StoredFile(
        id=file_id or str(uuid.uuid4()),
        user_id=user_id,
        original_size=encrypted.original_size,
        encrypted_size=encrypted.encrypted_size,
        chunk_size=encrypted.blob.chunk_size,
        framing=encrypted.blob.framing,
        created_at=datetime.now(timezone.utc),
    )
