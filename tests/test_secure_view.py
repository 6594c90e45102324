"""
Tests for ephemeral resources and the resource registry.
"""

import io

import pytest

from zerovault.core.errors import ResourceReleaseFailure
from zerovault.core.file_ops.secure_view import (
    HANDLE_PREFIX,
    EphemeralResource,
    ResourceRegistry,
)
from zerovault.core.memory import SecureMemoryBuffer


@pytest.fixture
def registry():
    return ResourceRegistry()


class TestEphemeralResource:
    """Tests for the read-only file-like handle."""

    def test_read_and_seek(self, registry):
        """Reads advance the position; seek moves it."""
        res = registry.create(b"0123456789", "application/octet-stream")
        assert res.read(4) == b"0123"
        assert res.tell() == 4
        assert res.read() == b"456789"
        assert res.read() == b""
        assert res.seek(-3, io.SEEK_END) == 7
        assert res.read(10) == b"789"
        res.seek(2)
        assert res.read(2) == b"23"
        res.seek(1, io.SEEK_CUR)
        assert res.read(1) == b"5"

    def test_negative_seek_rejected(self, registry):
        """Seeking before the start is an error."""
        res = registry.create(b"abc", "text/plain")
        with pytest.raises(ValueError):
            res.seek(-1)

    def test_lines(self, registry):
        """Line reading and iteration."""
        res = registry.create(b"one\ntwo\nthree", "text/plain")
        assert res.readline() == b"one\n"
        assert list(res) == [b"two\n", b"three"]
        res.seek(0)
        assert res.readlines() == [b"one\n", b"two\n", b"three"]

    def test_file_like_flags(self, registry):
        """The handle is readable, seekable and never writable."""
        res = registry.create(b"x", "text/plain", name="x.txt")
        assert res.readable() and res.seekable()
        assert not res.writable()
        assert res.name == "x.txt"
        assert res.media_type == "text/plain"
        assert len(res) == res.size == 1

    def test_getbuffer_is_read_only(self, registry):
        """The zero-copy view cannot be written through."""
        res = registry.create(b"abc", "text/plain")
        view = res.getbuffer()
        assert bytes(view) == b"abc"
        with pytest.raises(TypeError):
            view[0] = 0

    def test_revoke_wipes_buffer(self, registry):
        """Revoking wipes the backing buffer and blocks further I/O."""
        buffer = SecureMemoryBuffer(b"decrypted image bytes")
        res = registry.create(buffer, "image/png")
        res.revoke()
        assert res.revoked and res.closed
        assert buffer.is_wiped
        with pytest.raises(ValueError, match="revoked"):
            res.read()
        with pytest.raises(ValueError):
            res.getbuffer()

    def test_revoke_is_idempotent(self, registry):
        """Revoking twice on the handle itself is harmless."""
        res = registry.create(b"abc", "text/plain")
        res.revoke()
        res.revoke()
        assert registry.live_count == 0

    def test_context_manager(self, registry):
        """Leaving the context revokes the handle."""
        with registry.create(b"abc", "text/plain") as res:
            assert res.read() == b"abc"
        assert res.revoked
        assert registry.live_count == 0

    def test_standalone_resource(self):
        """A resource works without a registry."""
        res = EphemeralResource(SecureMemoryBuffer(b"data"), "application/pdf")
        assert res.handle_id.startswith(HANDLE_PREFIX)
        res.close()
        assert res.revoked

    def test_repr_hides_content(self, registry):
        """repr carries the handle, never the bytes."""
        res = registry.create(b"very private", "text/plain")
        assert "private" not in repr(res)
        res.revoke()
        assert "REVOKED" in repr(res)


class TestResourceRegistry:
    """Tests for live-handle tracking."""

    def test_create_tracks_handle(self, registry):
        """New handles are live and uniquely named."""
        first = registry.create(b"a", "text/plain")
        second = registry.create(b"b", "text/plain")
        assert first.handle_id != second.handle_id
        assert first.handle_id.startswith(HANDLE_PREFIX)
        assert registry.is_live(first.handle_id)
        assert registry.live_count == 2

    def test_adopts_secure_buffer(self, registry):
        """A SecureMemoryBuffer is adopted rather than copied."""
        buffer = SecureMemoryBuffer(b"adopted")
        res = registry.create(buffer, "application/octet-stream")
        registry.revoke(res)
        assert buffer.is_wiped

    def test_copies_plain_bytes(self, registry):
        """Plain bytes are copied into a wipeable buffer."""
        source = bytearray(b"copy me")
        res = registry.create(source, "text/plain")
        source[:] = b"\x00" * len(source)
        assert res.read() == b"copy me"

    def test_revoke_by_handle_id(self, registry):
        """Handles can be revoked by id."""
        res = registry.create(b"a", "text/plain")
        registry.revoke(res.handle_id)
        assert res.revoked
        assert not registry.is_live(res.handle_id)

    def test_revoke_unknown_handle(self, registry):
        """Revoking something not live is a release failure."""
        res = registry.create(b"a", "text/plain")
        registry.revoke(res)
        with pytest.raises(ResourceReleaseFailure) as exc_info:
            registry.revoke(res)
        assert exc_info.value.tag.value == "resource_release_failure"

    def test_direct_revoke_updates_registry(self, registry):
        """Revoking on the handle itself removes it from the registry."""
        res = registry.create(b"a", "text/plain")
        res.revoke()
        assert registry.live_count == 0

    def test_revoke_all(self, registry):
        """revoke_all releases every handle."""
        handles = [registry.create(b"x", "text/plain") for _ in range(3)]
        assert registry.revoke_all() == 3
        assert registry.live_count == 0
        assert all(h.revoked for h in handles)

    def test_revoke_hook_called_once(self, registry):
        """The owner hook fires once, after the registry has forgotten the handle."""
        calls = []

        def hook(handle_id):
            calls.append((handle_id, registry.is_live(handle_id)))

        res = registry.create(b"a", "text/plain", on_revoke=hook)
        res.close()
        res.close()

        assert calls == [(res.handle_id, False)]

    def test_revoke_hook_via_registry(self, registry):
        """Registry revocation reaches the owner hook too."""
        calls = []
        res = registry.create(b"a", "text/plain", on_revoke=calls.append)
        registry.revoke(res)
        assert calls == [res.handle_id]
