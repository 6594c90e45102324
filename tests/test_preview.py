"""
Tests for the preview orchestrator.

Files are encrypted with the real engine and kept in an in-memory store;
the access gate is a fake unless a test exercises the credential gate.
"""

import os
import threading

import pytest

from zerovault.core.config import PreviewConfig, VaultConfig
from zerovault.core.crypto.chunked import EncryptedBlob
from zerovault.core.errors import ErrorTag, PreviewAborted
from zerovault.core.file_ops.classifier import DetectedKind
from zerovault.core.file_ops.encrypt import EncryptedFile, FileEncryptor
from zerovault.core.file_ops.preview import (
    PreviewFailed,
    PreviewOrchestrator,
    PreviewState,
    decode_text_preview,
)
from zerovault.core.files.store import InMemoryCiphertextStore
from zerovault.security.access import CredentialAccessGate
from zerovault.security.audit import InMemoryAuditSink

from tests.conftest import OTHER_USER_ID, REAUTH_PROOF, USER_ID

MIB = 1024 * 1024
PNG = b"\x89PNG\r\n\x1a\n" + os.urandom(2048)


class CancellingStore(InMemoryCiphertextStore):
    """Cancels the orchestrator's request from inside fetch_blob."""

    orchestrator = None

    def fetch_blob(self, file_id, grant):
        self.orchestrator.cancel()
        return super().fetch_blob(file_id, grant)


class BlockingStore(InMemoryCiphertextStore):
    """Holds fetch_blob for one file until released by the test."""

    def __init__(self):
        super().__init__()
        self.block_id = None
        self.entered = threading.Event()
        self.proceed = threading.Event()

    def fetch_blob(self, file_id, grant):
        if file_id == self.block_id:
            self.entered.set()
            self.proceed.wait(10)
        return super().fetch_blob(file_id, grant)


class BrokenStore(InMemoryCiphertextStore):
    def fetch_blob(self, file_id, grant):
        raise RuntimeError("disk on fire at /var/lib/vault")


class ExplodingSink:
    def emit(self, event):
        raise RuntimeError("sink down")


@pytest.fixture(scope="module")
def encryptor():
    return FileEncryptor()


@pytest.fixture
def store():
    return InMemoryCiphertextStore()


@pytest.fixture
def sink():
    return InMemoryAuditSink()


@pytest.fixture
def orchestrator(fake_gate, store, sink):
    return PreviewOrchestrator(fake_gate, store, sink=sink)


def upload(store, encryptor, content, name="file.bin", declared_type=None, file_id=None):
    encrypted = encryptor.encrypt_bytes(content, name, USER_ID, declared_type=declared_type)
    return store.put(USER_ID, encrypted, file_id=file_id).id


def run_in_thread(func, *args):
    """Run func in a thread; returns (thread, outcome dict)."""
    outcome = {}

    def target():
        try:
            outcome["result"] = func(*args)
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(target=target)
    thread.start()
    return thread, outcome


class TestRendering:
    """Successful previews."""

    def test_text_preview(self, orchestrator, store, encryptor, sink):
        """Text is decoded, and no resource is left behind."""
        file_id = upload(store, encryptor, "Dear diary ✓\n".encode(), "diary.txt", "text/plain")

        result = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert result.kind is DetectedKind.TEXT
        assert result.text == "Dear diary ✓\n"
        assert result.resource is None
        assert result.file_name == "diary.txt"
        assert not result.truncated
        assert orchestrator.state is PreviewState.RENDERED
        assert orchestrator.current is result
        assert orchestrator.registry.live_count == 0
        assert sink.names() == ["requested", "decrypted", "classified", "rendered"]

    def test_text_truncated_at_limit(self, fake_gate, store, encryptor):
        """Text beyond the preview limit is cut and flagged."""
        config = VaultConfig(preview=PreviewConfig(max_text_preview_chars=10))
        orchestrator = PreviewOrchestrator(fake_gate, store, config=config)
        file_id = upload(store, encryptor, b"0123456789abcdef", "long.txt", "text/plain")

        result = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert result.text == "0123456789"
        assert result.truncated

    def test_large_pdf_with_generic_declared_type(self, orchestrator, store, encryptor):
        """A 10 MiB PDF stored as octet-stream previews as PDF."""
        content = b"%PDF-1.4\n" + os.urandom(10 * MIB - 9)
        file_id = upload(store, encryptor, content, "scan", "application/octet-stream")

        result = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert result.kind is DetectedKind.PDF
        assert result.media_type == "application/pdf"
        assert result.declared_type == "application/octet-stream"
        resource = result.resource
        assert resource.size == 10 * MIB
        assert resource.read(4) == b"%PDF"
        assert orchestrator.registry.live_count == 1

    def test_declared_type_is_ignored(self, orchestrator, store, encryptor):
        """Classification follows content, not the declared type."""
        file_id = upload(store, encryptor, PNG, "photo.pdf", "application/pdf")

        result = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert result.kind is DetectedKind.IMAGE
        assert result.media_type == "image/png"

    def test_binary_fallback(self, orchestrator, store, encryptor):
        """Unrecognised content is handed over as a binary resource."""
        file_id = upload(store, encryptor, b"\x00\x01\x02\x03" * 64)

        result = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert result.kind is DetectedKind.BINARY
        assert result.media_type == "application/octet-stream"
        assert result.confidence == 0.0
        assert result.resource.read() == b"\x00\x01\x02\x03" * 64

    def test_empty_file(self, orchestrator, store, encryptor):
        """An empty file previews as an empty binary resource."""
        file_id = upload(store, encryptor, b"", "empty")

        result = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert result.kind is DetectedKind.BINARY
        assert result.resource.size == 0

    def test_grant_requested_and_released_every_time(self, orchestrator, store, encryptor, fake_gate):
        """Each preview asks for a fresh grant and releases it."""
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")

        orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)
        orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert fake_gate.requests == [file_id, file_id]
        assert [g.token for g in fake_gate.released] == ["grant-1", "grant-2"]

    def test_sink_failure_does_not_break_preview(self, fake_gate, store, encryptor):
        """A failing audit sink is logged, not propagated."""
        orchestrator = PreviewOrchestrator(fake_gate, store, sink=ExplodingSink())
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")

        result = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert result.text == "hello"


class TestRelease:
    """Release, supersede and cancellation."""

    def test_close_revokes_resource(self, orchestrator, store, encryptor, sink):
        """close() wipes the resource and ends in RELEASED."""
        file_id = upload(store, encryptor, PNG, "photo.png", "image/png")
        resource = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID).resource

        orchestrator.close()

        assert resource.revoked
        assert orchestrator.registry.live_count == 0
        assert orchestrator.state is PreviewState.RELEASED
        assert orchestrator.current is None
        assert sink.names()[-1] == "released"

    def test_renderer_closing_resource_releases(self, orchestrator, store, encryptor, sink, caplog):
        """A renderer closing its handle moves the preview to RELEASED once."""
        file_id = upload(store, encryptor, PNG, "photo.png", "image/png")
        resource = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID).resource

        resource.close()
        orchestrator.close()
        resource.close()

        assert resource.revoked
        assert orchestrator.state is PreviewState.RELEASED
        assert orchestrator.current is None
        assert orchestrator.registry.live_count == 0
        assert sink.names().count("released") == 1
        assert "resource_release_failure" not in caplog.text

    def test_new_request_after_renderer_close(self, orchestrator, store, encryptor, sink):
        """Nothing is released twice when the next preview opens."""
        first_id = upload(store, encryptor, PNG, "one.png", "image/png")
        second_id = upload(store, encryptor, PNG, "two.png", "image/png")

        orchestrator.open_preview(first_id, REAUTH_PROOF, USER_ID).resource.close()
        second = orchestrator.open_preview(second_id, REAUTH_PROOF, USER_ID)

        assert sink.names().count("released") == 1
        assert orchestrator.current is second
        assert orchestrator.registry.live_count == 1

        assert sink.names()[-1] == "released"

    def test_close_when_idle(self, orchestrator):
        """close() with nothing open does nothing."""
        orchestrator.close()
        assert orchestrator.state is PreviewState.IDLE

    def test_supersede_releases_previous(self, orchestrator, store, encryptor, sink):
        """A new request releases the previous resource exactly once."""
        first_id = upload(store, encryptor, PNG, "one.png", "image/png")
        second_id = upload(store, encryptor, PNG, "two.png", "image/png")

        first = orchestrator.open_preview(first_id, REAUTH_PROOF, USER_ID)
        second = orchestrator.open_preview(second_id, REAUTH_PROOF, USER_ID)

        names = sink.names()
        first_rendered = names.index("rendered")
        second_rendered = names.index("rendered", first_rendered + 1)
        assert names[first_rendered:second_rendered].count("released") == 1
        assert first.resource.revoked
        assert not second.resource.revoked
        assert orchestrator.registry.live_count == 1
        assert orchestrator.current is second

    def test_release_event_belongs_to_released_request(self, orchestrator, store, encryptor, sink):
        """The released event of a superseded preview carries its own request number."""
        first_id = upload(store, encryptor, PNG, "one.png", "image/png")
        second_id = upload(store, encryptor, PNG, "two.png", "image/png")

        orchestrator.open_preview(first_id, REAUTH_PROOF, USER_ID)
        orchestrator.open_preview(second_id, REAUTH_PROOF, USER_ID)

        by_name = {}
        for event in sink.events:
            by_name.setdefault(event.name, []).append(event)
        first_rendered, second_rendered = by_name["rendered"]
        (released,) = by_name["released"]
        assert released.request == first_rendered.request
        assert released.file_id == first_id
        assert second_rendered.request == first_rendered.request + 1

    def test_cancel_during_fetch(self, fake_gate, encryptor, sink):
        """Cancelling mid-fetch aborts, releases the grant and keeps nothing."""
        store = CancellingStore()
        orchestrator = PreviewOrchestrator(fake_gate, store, sink=sink)
        store.orchestrator = orchestrator
        file_id = upload(store, encryptor, PNG, "photo.png", "image/png")

        with pytest.raises(PreviewAborted):
            orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert orchestrator.state is PreviewState.RELEASED
        assert orchestrator.registry.live_count == 0
        assert orchestrator.current is None
        assert sink.names() == ["requested", "released"]
        assert len(fake_gate.released) == 1

    def test_cancel_from_another_thread(self, fake_gate, encryptor):
        """cancel() may be called while a request is blocked in the store."""
        store = BlockingStore()
        orchestrator = PreviewOrchestrator(fake_gate, store)
        store.block_id = upload(store, encryptor, PNG, "photo.png", "image/png")

        thread, outcome = run_in_thread(orchestrator.open_preview, store.block_id, REAUTH_PROOF, USER_ID)
        assert store.entered.wait(10)
        assert orchestrator.cancel() is True
        store.proceed.set()
        thread.join(10)

        assert isinstance(outcome.get("error"), PreviewAborted)
        assert orchestrator.state is PreviewState.RELEASED
        assert orchestrator.registry.live_count == 0

    def test_superseded_in_flight_request(self, fake_gate, encryptor):
        """A slow request overtaken by a newer one is discarded."""
        store = BlockingStore()
        orchestrator = PreviewOrchestrator(fake_gate, store)
        store.block_id = upload(store, encryptor, PNG, "slow.png", "image/png")
        fast_id = upload(store, encryptor, b"fast text", "fast.txt", "text/plain")

        thread, outcome = run_in_thread(orchestrator.open_preview, store.block_id, REAUTH_PROOF, USER_ID)
        assert store.entered.wait(10)
        result = orchestrator.open_preview(fast_id, REAUTH_PROOF, USER_ID)
        store.proceed.set()
        thread.join(10)

        assert isinstance(outcome.get("error"), PreviewAborted)
        assert orchestrator.current is result
        assert orchestrator.state is PreviewState.RENDERED
        assert orchestrator.registry.live_count == 0

    def test_cancel_when_idle(self, orchestrator):
        """Nothing to cancel."""
        assert orchestrator.cancel() is False

    def test_cancel_after_render_releases(self, orchestrator, store, encryptor):
        """cancel() on a rendered preview releases it."""
        file_id = upload(store, encryptor, PNG, "photo.png", "image/png")
        orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert orchestrator.cancel() is False
        assert orchestrator.registry.live_count == 0
        assert orchestrator.state is PreviewState.RELEASED


class TestFailures:
    """Failures end in ERRORED with a tag and a fixed message."""

    def _fail(self, orchestrator, file_id, proof=REAUTH_PROOF, user_id=USER_ID):
        with pytest.raises(PreviewFailed) as exc_info:
            orchestrator.open_preview(file_id, proof, user_id)
        assert orchestrator.state is PreviewState.ERRORED
        assert orchestrator.current is None
        assert orchestrator.registry.live_count == 0
        assert exc_info.value.__cause__ is None
        assert exc_info.value.__suppress_context__
        return exc_info.value

    def test_access_denied(self, orchestrator, store, encryptor, sink, fake_gate):
        """A rejected proof fails before anything is fetched."""
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")

        error = self._fail(orchestrator, file_id, proof="wrong")

        assert error.tag is ErrorTag.ACCESS_DENIED
        assert orchestrator.error.message == "Access denied"
        assert sink.names() == ["requested", "errored:access_denied"]
        assert fake_gate.released == []

    def test_tampered_body(self, orchestrator, store, encryptor, fake_gate):
        """A flipped ciphertext byte yields decryption_failed and no content."""
        original = encryptor.encrypt_bytes(PNG, "photo.png", USER_ID, declared_type="image/png")
        flipped = bytearray(original.blob.ciphertext)
        flipped[100] ^= 0x01
        tampered = EncryptedFile(
            blob=EncryptedBlob(original.blob.iv, bytes(flipped), original.blob.chunk_size),
            metadata=original.metadata,
            original_size=original.original_size,
        )
        file_id = store.put(USER_ID, tampered).id

        error = self._fail(orchestrator, file_id)

        assert error.tag is ErrorTag.DECRYPTION_FAILED
        assert str(error) == "The file could not be decrypted"
        assert len(fake_gate.released) == 1

    def test_wrong_identifier(self, orchestrator, store, encryptor):
        """Another account's key cannot open the file."""
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")

        error = self._fail(orchestrator, file_id, user_id=OTHER_USER_ID)

        assert error.tag is ErrorTag.DECRYPTION_FAILED
        assert OTHER_USER_ID not in str(error)

    @pytest.mark.parametrize("bad_user_id", ["", "user\ud800"])
    def test_invalid_identifier(self, orchestrator, store, encryptor, sink, bad_user_id):
        """An unusable identifier is invalid key material."""
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")

        error = self._fail(orchestrator, file_id, user_id=bad_user_id)

        assert error.tag is ErrorTag.INVALID_KEY_MATERIAL
        assert sink.names()[-1] == "errored:invalid_key_material"

    def test_missing_file(self, orchestrator, sink):
        """Unknown ids are not_found."""
        error = self._fail(orchestrator, "no-such-file")

        assert error.tag is ErrorTag.NOT_FOUND
        assert sink.names()[-1] == "errored:not_found"

    def test_too_large(self, fake_gate, store, encryptor):
        """Files over the preview limit are refused before decryption."""
        config = VaultConfig(preview=PreviewConfig(max_preview_bytes=100))
        orchestrator = PreviewOrchestrator(fake_gate, store, config=config)
        file_id = upload(store, encryptor, b"x" * 101, "big.txt", "text/plain")

        error = self._fail(orchestrator, file_id)

        assert error.tag is ErrorTag.TOO_LARGE

    def test_unexpected_error_is_internal(self, fake_gate, encryptor):
        """Unexpected exceptions are reported without their details."""
        store = BrokenStore()
        orchestrator = PreviewOrchestrator(fake_gate, store)
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")

        error = self._fail(orchestrator, file_id)

        assert error.tag is ErrorTag.INTERNAL_ERROR
        assert str(error) == "Preview failed"
        assert "/var/lib/vault" not in str(error)

    def test_recovers_after_error(self, orchestrator, store, encryptor):
        """A new request after a failure starts clean."""
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")
        self._fail(orchestrator, file_id, proof="wrong")

        result = orchestrator.open_preview(file_id, REAUTH_PROOF, USER_ID)

        assert result.text == "hello"
        assert orchestrator.error is None
        assert orchestrator.state is PreviewState.RENDERED


class TestCredentialGateIntegration:
    """The orchestrator with the Argon2id gate and a checking store."""

    @pytest.fixture
    def gate(self, fast_hasher):
        return CredentialAccessGate.from_passwords(
            primary="vault pass", secondary="login pass", hasher=fast_hasher
        )

    def test_primary_credential_previews(self, gate, encryptor):
        """The primary credential authorizes; the grant is released afterwards."""
        store = InMemoryCiphertextStore(authorizer=gate.check)
        orchestrator = PreviewOrchestrator(gate, store)
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")

        result = orchestrator.open_preview(file_id, "vault pass", USER_ID)

        assert result.text == "hello"
        assert gate.active_grants == 0

    def test_secondary_credential_refused(self, gate, encryptor):
        """The secondary credential cannot authorize a preview."""
        store = InMemoryCiphertextStore(authorizer=gate.check)
        orchestrator = PreviewOrchestrator(gate, store)
        file_id = upload(store, encryptor, b"hello", "a.txt", "text/plain")

        with pytest.raises(PreviewFailed) as exc_info:
            orchestrator.open_preview(file_id, "login pass", USER_ID)

        assert exc_info.value.tag is ErrorTag.ACCESS_DENIED


class TestDecodeTextPreview:
    """Tests for bounded text decoding."""

    def test_short_text(self):
        """Short text is returned whole."""
        assert decode_text_preview(b"hi", 10) == ("hi", False)

    def test_bom_stripped(self):
        """A leading BOM is not part of the preview."""
        assert decode_text_preview(b"\xef\xbb\xbfhi", 10) == ("hi", False)

    def test_counts_characters_not_bytes(self):
        """The limit applies to characters."""
        text, truncated = decode_text_preview(("é" * 20).encode(), 5)
        assert text == "é" * 5
        assert truncated

    def test_invalid_bytes_replaced(self):
        """Undecodable bytes past the sniffed prefix become replacement characters."""
        text, _ = decode_text_preview(b"ok\xff", 10)
        assert text == "ok\ufffd"
