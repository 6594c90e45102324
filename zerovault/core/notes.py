"""
Encrypted Notes
===============

Notes are encrypted field by field with a per-note data encryption key
(DEK). The DEK is wrapped under the account master key and stored with
the note.

Field format (hex, matching the browser client):
    "<ciphertext_hex>:<iv_hex>"

Tags are JSON-encoded into a single field before encryption.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional

from zerovault.core.crypto.aes_gcm import AES_NONCE_SIZE, AesGcmCipher
from zerovault.core.crypto.envelope import WrappedKey, generate_dek, unwrap_dek, wrap_dek
from zerovault.core.crypto.kdf import ContentKey
from zerovault.core.errors import AuthenticationFailed, TruncatedInput
from zerovault.utils.validators import ValidationError, validate_hex


@dataclass(frozen=True, slots=True)
class Note:
    """Plaintext note."""

    title: str
    content: str
    tags: tuple[str, ...] = field(default_factory=tuple)

    def __repr__(self) -> str:
        return f"Note(title_len={len(self.title)}, tags={len(self.tags)})"


@dataclass(frozen=True, slots=True)
class EncryptedNote:
    """Note as stored server-side. Every field is opaque."""

    title: str
    content: str
    tags: str
    wrapped_dek: str

    def to_dict(self) -> dict[str, str]:
        return {
            "title": self.title,
            "content": self.content,
            "tags": self.tags,
            "wrappedDEK": self.wrapped_dek,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedNote":
        try:
            return cls(
                title=data["title"],
                content=data["content"],
                tags=data["tags"],
                wrapped_dek=data["wrappedDEK"],
            )
        except (KeyError, TypeError):
            raise TruncatedInput("Encrypted note is missing fields") from None

    def __repr__(self) -> str:
        return "EncryptedNote(...)"


class NoteCodec:
    """
    Encrypt and decrypt notes under the envelope scheme.

    Usage:
        codec = NoteCodec()
        with derive_master_key(password, salt_hex) as master:
            sealed = codec.encrypt_note(Note("Title", "Body", ("work",)), master)
            note = codec.decrypt_note(sealed, master)
    """

    __slots__ = ("_cipher",)

    def __init__(self) -> None:
        self._cipher = AesGcmCipher()

    def encrypt_field(self, dek: ContentKey, text: str) -> str:
        result = self._cipher.encrypt(text.encode("utf-8"), dek.material)
        return f"{result.ciphertext.hex()}:{result.nonce.hex()}"

    def decrypt_field(self, dek: ContentKey, token: str) -> str:
        """
        Raises:
            TruncatedInput: If the token is malformed
            AuthenticationFailed: If the field fails verification
        """
        ct_hex, sep, iv_hex = token.partition(":") if isinstance(token, str) else ("", "", "")
        if not sep:
            raise TruncatedInput("Note field is malformed")
        try:
            ciphertext = validate_hex(ct_hex, field_name="ciphertext")
            iv = validate_hex(iv_hex, field_name="iv")
        except ValidationError:
            raise TruncatedInput("Note field is not valid hex") from None
        if len(iv) != AES_NONCE_SIZE:
            raise TruncatedInput("Note field nonce has the wrong size")

        plaintext = self._cipher.decrypt(ciphertext, iv, dek.material)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise AuthenticationFailed("Note field is not UTF-8") from None

    def encrypt_note(
        self,
        note: Note,
        master_key: ContentKey,
        dek: Optional[ContentKey] = None,
    ) -> EncryptedNote:
        """
        Encrypt a note.

        A fresh DEK is generated (and wiped afterwards) unless one is given,
        e.g. to re-encrypt an edited note under its existing key.
        """
        owned = dek is None
        dek = dek or generate_dek()
        try:
            return EncryptedNote(
                title=self.encrypt_field(dek, note.title),
                content=self.encrypt_field(dek, note.content),
                tags=self.encrypt_field(dek, json.dumps(list(note.tags))),
                wrapped_dek=wrap_dek(master_key, dek).to_token(),
            )
        finally:
            if owned:
                dek.wipe()

    def unwrap_note_key(self, encrypted: EncryptedNote, master_key: ContentKey) -> ContentKey:
        """Recover a note's DEK (caller wipes it)."""
        return unwrap_dek(master_key, WrappedKey.from_token(encrypted.wrapped_dek))

    def decrypt_note(self, encrypted: EncryptedNote, master_key: ContentKey) -> Note:
        """
        Decrypt a note.

        Raises:
            TruncatedInput: If any field is malformed
            AuthenticationFailed: If the master key is wrong or a field
                was altered
        """
        with self.unwrap_note_key(encrypted, master_key) as dek:
            title = self.decrypt_field(dek, encrypted.title)
            content = self.decrypt_field(dek, encrypted.content)
            tags_json = self.decrypt_field(dek, encrypted.tags)

        try:
            tags = json.loads(tags_json)
        except ValueError:
            raise TruncatedInput("Note tags are malformed") from None
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise TruncatedInput("Note tags are malformed")

        return Note(title=title, content=content, tags=tuple(tags))


def export_backup(notes: list[EncryptedNote]) -> str:
    """Serialize encrypted notes into one JSON document. Nothing is decrypted."""
    return json.dumps({"version": 1, "items": [n.to_dict() for n in notes]})


def import_backup(backup_json: str) -> list[EncryptedNote]:
    """
    Parse a backup produced by export_backup.

    Raises:
        TruncatedInput: If the document is malformed
    """
    try:
        data = json.loads(backup_json)
        items = data["items"]
    except (ValueError, KeyError, TypeError):
        raise TruncatedInput("Backup document is malformed") from None
    if not isinstance(items, list):
        raise TruncatedInput("Backup document is malformed")
    return [EncryptedNote.from_dict(item) for item in items]
