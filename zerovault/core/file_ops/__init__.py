"""
ZeroVault File Operations Module
================================

Encryption, decryption, classification and secure preview of files.

Security Features:
- Chunked authenticated encryption of file bodies
- Metadata encrypted separately from content
- Content classified from bytes, never from the declared type
- In-memory preview resources (no temp files), wiped on release
- Fail-closed design

Components:
- metadata.py: Filename / declared type encryption
- encrypt.py: File encryption and upload validation
- decrypt.py: File decryption
- classifier.py: Magic-number and text detection
- secure_view.py: Ephemeral in-memory resources
- preview.py: Preview state machine
"""

from zerovault.core.file_ops.metadata import (
    EncryptedMetadata,
    FileMetadata,
    MetadataCodec,
)
from zerovault.core.file_ops.classifier import (
    ClassifiedContent,
    ContentClassifier,
    DetectedKind,
    classify,
)
from zerovault.core.file_ops.secure_view import EphemeralResource, ResourceRegistry
from zerovault.core.file_ops.encrypt import (
    EncryptedFile,
    FileEncryptor,
    encrypt_bytes,
    encrypt_file,
    validate_file_for_upload,
)
from zerovault.core.file_ops.decrypt import DecryptedFile, FileDecryptor, decrypt_bytes
from zerovault.core.file_ops.preview import (
    PreviewError,
    PreviewFailed,
    PreviewOrchestrator,
    PreviewResult,
    PreviewState,
)

__all__ = [
    "EncryptedMetadata",
    "FileMetadata",
    "MetadataCodec",
    "ClassifiedContent",
    "ContentClassifier",
    "DetectedKind",
    "classify",
    "EphemeralResource",
    "ResourceRegistry",
    "EncryptedFile",
    "FileEncryptor",
    "encrypt_bytes",
    "encrypt_file",
    "validate_file_for_upload",
    "DecryptedFile",
    "FileDecryptor",
    "decrypt_bytes",
    "PreviewError",
    "PreviewFailed",
    "PreviewOrchestrator",
    "PreviewResult",
    "PreviewState",
]
