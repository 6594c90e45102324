"""Ciphertext storage backends."""

from zerovault.core.files.store import (
    CiphertextStore,
    InMemoryCiphertextStore,
    SqliteCiphertextStore,
    StoredFile,
)

__all__ = [
    "CiphertextStore",
    "InMemoryCiphertextStore",
    "SqliteCiphertextStore",
    "StoredFile",
]
