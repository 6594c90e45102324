"""
Preview Orchestrator
====================

Drives one file preview from re-authentication to release.

States:
    IDLE -> REQUESTING -> DECRYPTING -> CLASSIFYING -> RENDERED -> RELEASED
    ERRORED is reachable from every in-flight step.

Flow:
1. Ask the Access Gate for a fresh grant (never cached)
2. Fetch the encrypted body and metadata with that grant
3. Derive the content key, decrypt metadata and body, wipe the key
4. Classify the plaintext from its bytes (declared type is advisory)
5. Hand the renderer bounded text or an ephemeral resource
6. Release the resource on close(), cancel() or the next request

Guarantees:
- At most one live ephemeral resource per orchestrator
- A failed decryption never yields ciphertext or partial plaintext
- A cancelled or superseded request drops and wipes its results
- Error payloads carry a tag and a fixed message only
"""

from __future__ import annotations

import codecs
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Final, Optional

from zerovault.core.config import VaultConfig
from zerovault.core.crypto.chunked import ChunkedCipherEngine, EncryptedBlob
from zerovault.core.crypto.aes_gcm import AES_TAG_SIZE
from zerovault.core.crypto.kdf import KeyDerivationService
from zerovault.core.errors import (
    AccessDenied,
    AuthenticationFailed,
    ErrorTag,
    FileNotFoundInStore,
    InvalidKeyMaterial,
    PreviewAborted,
    PreviewTooLarge,
    ResourceReleaseFailure,
    TruncatedInput,
    UnclassifiableContent,
    VaultError,
)
from zerovault.core.file_ops.classifier import (
    ClassifiedContent,
    ContentClassifier,
    DetectedKind,
    binary_fallback,
)
from zerovault.core.file_ops.metadata import FileMetadata, MetadataCodec
from zerovault.core.file_ops.secure_view import EphemeralResource, ResourceRegistry
from zerovault.core.files.store import CiphertextStore
from zerovault.core.logging import get_secure_logger
from zerovault.core.memory import SecureMemoryBuffer
from zerovault.security.access import AccessGate, AccessGrant
from zerovault.security.audit import (
    EVENT_CLASSIFIED,
    EVENT_DECRYPTED,
    EVENT_RELEASED,
    EVENT_RENDERED,
    EVENT_REQUESTED,
    AuditSink,
    InMemoryAuditSink,
    PreviewEvent,
    errored,
)

logger = get_secure_logger(__name__)

_BOM: Final[str] = "\ufeff"


class PreviewState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    DECRYPTING = "decrypting"
    CLASSIFYING = "classifying"
    RENDERED = "rendered"
    RELEASED = "released"
    ERRORED = "errored"


IN_FLIGHT: Final[frozenset[PreviewState]] = frozenset({
    PreviewState.REQUESTING,
    PreviewState.DECRYPTING,
    PreviewState.CLASSIFYING,
})


_SAFE_MESSAGES: Final[dict[ErrorTag, str]] = {
    ErrorTag.ACCESS_DENIED: "Access denied",
    ErrorTag.DECRYPTION_FAILED: "The file could not be decrypted",
    ErrorTag.INVALID_KEY_MATERIAL: "The vault key could not be derived",
    ErrorTag.NOT_FOUND: "File not found",
    ErrorTag.TOO_LARGE: "File is too large to preview",
    ErrorTag.INTERNAL_ERROR: "Preview failed",
}


@dataclass(frozen=True, slots=True)
class PreviewError:
    """What a renderer may show for a failed preview."""

    tag: ErrorTag
    message: str


class PreviewFailed(VaultError):
    """Raised by open_preview after the orchestrator enters ERRORED."""

    default_message = "Preview failed"

    def __init__(self, error: PreviewError) -> None:
        super().__init__(error.message)
        self.error = error
        self.tag = error.tag

    @property
    def safe_message(self) -> str:
        return self.error.message


@dataclass(frozen=True, slots=True)
class PreviewResult:
    """
    Typed preview handed to the rendering surface.

    Attributes:
        file_id: File being previewed
        kind: Detected media kind
        payload: Bounded text for TEXT, an EphemeralResource otherwise
        file_name: Decrypted original filename
        declared_type: Decrypted declared type (advisory)
        media_type: MIME type derived from the content
        confidence: Classification confidence
        truncated: True if text was cut at the preview limit
    """

    file_id: str
    kind: DetectedKind
    payload: str | EphemeralResource
    file_name: str
    declared_type: str
    media_type: str
    confidence: float
    truncated: bool = False

    @property
    def text(self) -> Optional[str]:
        return self.payload if isinstance(self.payload, str) else None

    @property
    def resource(self) -> Optional[EphemeralResource]:
        return self.payload if isinstance(self.payload, EphemeralResource) else None

    def __repr__(self) -> str:
        return (
            f"PreviewResult(file_id={self.file_id!r}, kind={self.kind.value}, "
            f"truncated={self.truncated})"
        )


def _error_tag(exc: BaseException) -> ErrorTag:
    if isinstance(exc, AccessDenied):
        return ErrorTag.ACCESS_DENIED
    if isinstance(exc, FileNotFoundInStore):
        return ErrorTag.NOT_FOUND
    if isinstance(exc, (AuthenticationFailed, TruncatedInput)):
        return ErrorTag.DECRYPTION_FAILED
    if isinstance(exc, PreviewTooLarge):
        return ErrorTag.TOO_LARGE
    if isinstance(exc, InvalidKeyMaterial):
        return ErrorTag.INVALID_KEY_MATERIAL
    return ErrorTag.INTERNAL_ERROR


def decode_text_preview(data: bytes | memoryview, max_chars: int) -> tuple[str, bool]:
    """
    Decode at most `max_chars` characters of UTF-8 text.

    Only the bytes needed are decoded. Undecodable bytes are replaced,
    since the classifier only vouched for the prefix.

    Returns:
        (text, truncated)
    """
    limit = max_chars * 4 + 4
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    text = decoder.decode(bytes(data[:limit]), final=len(data) <= limit)
    if text.startswith(_BOM):
        text = text[1:]
    if len(text) > max_chars:
        return text[:max_chars], True
    return text, False


class PreviewOrchestrator:
    """
    Secure preview pipeline state machine.

    Usage:
        orchestrator = PreviewOrchestrator(gate, store)

        result = orchestrator.open_preview(file_id, reauth_proof, user_id)
        if result.kind is DetectedKind.TEXT:
            show_text(result.text)
        else:
            show_media(result.resource.getbuffer(), result.media_type)

        orchestrator.close()  # releases the resource

    Thread Safety:
        State is guarded by a re-entrant lock. close() and cancel() may be
        called from another thread while open_preview() is waiting on the
        gate or the store. Each request carries a generation number; a
        request that is no longer current wipes what it holds and raises
        PreviewAborted.
    """

    def __init__(
        self,
        access_gate: AccessGate,
        store: CiphertextStore,
        engine: Optional[ChunkedCipherEngine] = None,
        codec: Optional[MetadataCodec] = None,
        classifier: Optional[ContentClassifier] = None,
        sink: Optional[AuditSink] = None,
        config: Optional[VaultConfig] = None,
        registry: Optional[ResourceRegistry] = None,
        key_service: Optional[KeyDerivationService] = None,
    ) -> None:
        config = config or VaultConfig()
        self._gate = access_gate
        self._store = store
        self._engine = engine or ChunkedCipherEngine(config.cipher)
        self._codec = codec or MetadataCodec()
        self._classifier = classifier or ContentClassifier(config.preview.sniff_prefix_bytes)
        self._sink = sink if sink is not None else InMemoryAuditSink()
        self._preview_config = config.preview
        self._registry = registry or ResourceRegistry()
        self._keys = key_service or KeyDerivationService()

        self._lock = threading.RLock()
        self._generation = 0
        self._state = PreviewState.IDLE
        self._file_id: Optional[str] = None
        self._current: Optional[PreviewResult] = None
        self._error: Optional[PreviewError] = None

    @property
    def state(self) -> PreviewState:
        with self._lock:
            return self._state

    @property
    def current(self) -> Optional[PreviewResult]:
        with self._lock:
            return self._current

    @property
    def error(self) -> Optional[PreviewError]:
        with self._lock:
            return self._error

    @property
    def registry(self) -> ResourceRegistry:
        return self._registry

    @property
    def sink(self) -> AuditSink:
        return self._sink

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def open_preview(self, file_id: str, reauth_proof: str, stable_user_id: str) -> PreviewResult:
        """
        Run the full preview pipeline for one file.

        Any preview currently rendered is released first.

        Returns:
            PreviewResult

        Raises:
            PreviewFailed: The orchestrator is now ERRORED; see .error
            PreviewAborted: The request was cancelled or superseded
        """
        with self._lock:
            self._release_current()
            self._generation += 1
            generation = self._generation
            self._file_id = file_id
            self._error = None
            self._enter(PreviewState.REQUESTING, EVENT_REQUESTED, generation)

        grant: Optional[AccessGrant] = None
        buffer: Optional[SecureMemoryBuffer] = None
        try:
            grant = self._gate.request_access(file_id, reauth_proof)
            self._ensure_current(generation)

            blob = self._store.fetch_blob(file_id, grant)
            self._ensure_current(generation)
            sealed = self._store.fetch_metadata(file_id, grant)
            self._ensure_current(generation)

            self._check_size(blob)

            with self._lock:
                self._ensure_current(generation)
                self._state = PreviewState.DECRYPTING

            with self._keys.derive_content_key(stable_user_id) as key:
                metadata = self._codec.decrypt_metadata(key, sealed)
                buffer = self._engine.decrypt_into_buffer(key, blob)

            with self._lock:
                self._ensure_current(generation)
                self._emit(EVENT_DECRYPTED, generation)
                self._state = PreviewState.CLASSIFYING

            classified = self._classify(buffer)
            with self._lock:
                self._ensure_current(generation)
                self._emit(EVENT_CLASSIFIED, generation, detail=classified.kind.value)

            result = self._render(file_id, metadata, classified, buffer)
            buffer = None  # owned by the result from here on

            with self._lock:
                if generation != self._generation:
                    self._discard(result)
                    raise PreviewAborted()
                self._current = result
                self._enter(PreviewState.RENDERED, EVENT_RENDERED, generation, detail=result.kind.value)
            return result

        except PreviewAborted:
            logger.info("Preview of file %s abandoned", file_id)
            raise
        except VaultError as e:
            raise self._fail(generation, _error_tag(e)) from None
        except Exception as e:
            logger.error("Unexpected %s while previewing file %s", type(e).__name__, file_id)
            raise self._fail(generation, ErrorTag.INTERNAL_ERROR) from None
        finally:
            if buffer is not None:
                buffer.wipe()
            if grant is not None:
                self._gate.release(grant)

    def close(self) -> None:
        """Release the current preview, or abandon one in flight."""
        with self._lock:
            if self._state is PreviewState.RENDERED:
                self._release_current()
            elif self._state in IN_FLIGHT:
                self.cancel()

    def cancel(self) -> bool:
        """
        Abandon an in-flight request.

        Its results are dropped and wiped when it next reaches a checkpoint.

        Returns:
            True if a request was cancelled
        """
        with self._lock:
            if self._state is PreviewState.RENDERED:
                self._release_current()
                return False
            if self._state not in IN_FLIGHT:
                return False
            generation = self._generation
            self._generation += 1
            self._enter(PreviewState.RELEASED, EVENT_RELEASED, generation, detail="cancelled")
            return True

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _check_size(self, blob: EncryptedBlob) -> None:
        plaintext_size = len(blob.ciphertext) - blob.chunk_count * AES_TAG_SIZE
        if plaintext_size > self._preview_config.max_preview_bytes:
            raise PreviewTooLarge()

    def _classify(self, buffer: SecureMemoryBuffer) -> ClassifiedContent:
        view = buffer.view()
        try:
            return self._classifier.classify(view, strict=True)
        except UnclassifiableContent:
            return binary_fallback(view)

    def _render(
        self,
        file_id: str,
        metadata: FileMetadata,
        classified: ClassifiedContent,
        buffer: SecureMemoryBuffer,
    ) -> PreviewResult:
        payload: str | EphemeralResource
        truncated = False

        if classified.kind is DetectedKind.TEXT:
            try:
                payload, truncated = decode_text_preview(
                    classified.raw, self._preview_config.max_text_preview_chars
                )
            finally:
                buffer.wipe()
        else:
            payload = self._registry.create(
                buffer,
                classified.media_type,
                name=metadata.name,
                on_revoke=self._resource_revoked,
            )

        return PreviewResult(
            file_id=file_id,
            kind=classified.kind,
            payload=payload,
            file_name=metadata.name,
            declared_type=metadata.declared_type,
            media_type=classified.media_type,
            confidence=classified.confidence,
            truncated=truncated,
        )

    # ------------------------------------------------------------------
    # State helpers (callers hold the lock unless noted)
    # ------------------------------------------------------------------

    def _ensure_current(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                raise PreviewAborted()

    def _enter(self, state: PreviewState, event: str, generation: int, detail: Optional[str] = None) -> None:
        self._state = state
        self._emit(event, generation, detail)

    def _emit(self, name: str, generation: int, detail: Optional[str] = None) -> None:
        event = PreviewEvent(
            name=name,
            file_id=self._file_id or "",
            state=self._state.value,
            detail=detail,
            request=generation,
        )
        try:
            self._sink.emit(event)
        except Exception as e:
            logger.error("Audit sink rejected %s event: %s", name, type(e).__name__)

    def _discard(self, result: PreviewResult) -> None:
        resource = result.resource
        if resource is None:
            return
        try:
            self._registry.revoke(resource)
        except ResourceReleaseFailure as e:
            logger.warning("%s: %s", e.tag.value, e.safe_message)

    def _release_current(self) -> None:
        if self._state is not PreviewState.RENDERED or self._current is None:
            return
        result, self._current = self._current, None
        self._discard(result)
        self._enter(PreviewState.RELEASED, EVENT_RELEASED, self._generation)

    def _resource_revoked(self, handle_id: str) -> None:
        """Revoke hook: the renderer closed the current resource itself."""
        with self._lock:
            resource = self._current.resource if self._current is not None else None
            if resource is None or resource.handle_id != handle_id:
                return
            self._current = None
            self._enter(PreviewState.RELEASED, EVENT_RELEASED, self._generation, detail="closed")

    def _fail(self, generation: int, tag: ErrorTag) -> VaultError:
        """Enter ERRORED if the request is still current; return what to raise."""
        with self._lock:
            if generation != self._generation:
                return PreviewAborted()
            error = PreviewError(tag=tag, message=_SAFE_MESSAGES[tag])
            self._error = error
            self._enter(PreviewState.ERRORED, errored(tag.value), generation)
            return PreviewFailed(error)
