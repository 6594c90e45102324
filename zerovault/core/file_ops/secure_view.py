"""
Ephemeral Preview Resources
===========================

In-memory, revocable handles for decrypted content handed to a renderer.

Security Properties:
- Content stays in memory only; no plaintext temp files are created
- Revoking a handle overwrites its backing buffer with zeros
- Handles are read-only
- The registry knows which handles are live, so a leaked handle can be
  detected and revoked

Usage Patterns:
1. ResourceRegistry.create(): wrap a decrypted buffer in a handle
2. EphemeralResource: file-like, read-only access for the renderer
3. ResourceRegistry.revoke(): release the handle and wipe its memory
"""

from __future__ import annotations

import io
import threading
import uuid
from typing import Callable, Final, Iterator, Optional

from zerovault.core.errors import ResourceReleaseFailure
from zerovault.core.logging import get_secure_logger
from zerovault.core.memory import SecureMemoryBuffer

logger = get_secure_logger(__name__)

HANDLE_PREFIX: Final[str] = "blob:"


def new_handle_id() -> str:
    """Opaque handle identifier in the style of a browser object URL."""
    return f"{HANDLE_PREFIX}{uuid.uuid4()}"


class EphemeralResource:
    """
    Read-only file-like interface over a decrypted buffer.

    Provides standard read operations without touching disk. The backing
    buffer is wiped when the resource is revoked.

    Usage:
        with registry.create(buffer, "application/pdf") as res:
            header = res.read(4)
            res.seek(0)

    Supports:
        - read(), readline(), readlines()
        - seek(), tell()
        - getbuffer() for zero-copy access
        - Iteration (for line in resource)
    """

    __slots__ = (
        "_buffer", "_position", "_handle_id", "_media_type",
        "_name", "_revoked", "_on_revoke",
    )

    def __init__(
        self,
        buffer: SecureMemoryBuffer,
        media_type: str,
        name: str = "untitled",
        handle_id: Optional[str] = None,
        on_revoke: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._buffer = buffer
        self._position = 0
        self._handle_id = handle_id or new_handle_id()
        self._media_type = media_type
        self._name = name
        self._revoked = False
        self._on_revoke = on_revoke

    @property
    def handle_id(self) -> str:
        return self._handle_id

    @property
    def media_type(self) -> str:
        return self._media_type

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return self._buffer.size

    @property
    def revoked(self) -> bool:
        return self._revoked

    # File-like protocol
    closed = revoked

    def _check_open(self) -> None:
        if self._revoked:
            raise ValueError("I/O operation on revoked resource")

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def writable(self) -> bool:
        return False

    def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes (all remaining when negative)."""
        self._check_open()
        view = self._buffer.view()
        start = min(self._position, len(view))
        end = len(view) if size is None or size < 0 else min(len(view), start + size)
        if end > start:
            self._position = end
        return bytes(view[start:end])

    def readline(self, size: int = -1) -> bytes:
        """Read up to and including the next newline."""
        self._check_open()
        view = self._buffer.view()
        if self._position >= len(view):
            return b""
        limit = len(view) if size is None or size < 0 else min(len(view), self._position + size)
        window = view[self._position:limit]
        newline = bytes(window).find(b"\n")
        end = self._position + (newline + 1 if newline >= 0 else len(window))
        data = bytes(view[self._position:end])
        self._position = end
        return data

    def readlines(self, hint: int = -1) -> list[bytes]:
        lines = []
        total = 0
        for line in self:
            lines.append(line)
            total += len(line)
            if 0 < hint <= total:
                break
        return lines

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move the read position."""
        self._check_open()
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self._position + offset
        elif whence == io.SEEK_END:
            position = self._buffer.size + offset
        else:
            raise ValueError(f"Invalid whence: {whence}")
        if position < 0:
            raise ValueError("Negative seek position")
        self._position = position
        return position

    def tell(self) -> int:
        self._check_open()
        return self._position

    def getbuffer(self) -> memoryview:
        """Read-only zero-copy view. Invalid (zeroed) after revoke."""
        self._check_open()
        return self._buffer.view()

    def revoke(self) -> None:
        """Wipe the backing buffer and invalidate the handle."""
        if self._revoked:
            return
        self._buffer.wipe()
        self._revoked = True
        if self._on_revoke is not None:
            callback, self._on_revoke = self._on_revoke, None
            callback(self._handle_id)

    close = revoke

    def __enter__(self) -> "EphemeralResource":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.revoke()

    def __iter__(self) -> Iterator[bytes]:
        self._check_open()
        while True:
            line = self.readline()
            if not line:
                return
            yield line

    def __len__(self) -> int:
        return self._buffer.size

    def __repr__(self) -> str:
        if self._revoked:
            return f"EphemeralResource({self._handle_id}, REVOKED)"
        return (
            f"EphemeralResource({self._handle_id}, media_type={self._media_type!r}, "
            f"size={self._buffer.size})"
        )


class ResourceRegistry:
    """
    Tracks live ephemeral resources.

    The registry is the single place handles are created and revoked, so the
    number of live handles can be checked at any time.

    Usage:
        registry = ResourceRegistry()
        res = registry.create(buffer, "image/png", name="photo.png")
        ...
        registry.revoke(res)
        assert registry.live_count == 0
    """

    __slots__ = ("_live", "_lock")

    def __init__(self) -> None:
        self._live: dict[str, EphemeralResource] = {}
        self._lock = threading.Lock()

    def create(
        self,
        data: SecureMemoryBuffer | bytes | bytearray,
        media_type: str,
        name: str = "untitled",
        on_revoke: Optional[Callable[[str], None]] = None,
    ) -> EphemeralResource:
        """
        Wrap decrypted content in a new handle.

        A SecureMemoryBuffer is adopted without copying; the resource then
        owns it. Plain bytes are copied into a new wipeable buffer.

        `on_revoke` is called with the handle id once the handle is revoked,
        however that happens (registry, owner or the resource itself).
        """
        buffer = data if isinstance(data, SecureMemoryBuffer) else SecureMemoryBuffer(data)

        def revoked(handle_id: str) -> None:
            self._forget(handle_id)
            if on_revoke is not None:
                on_revoke(handle_id)

        resource = EphemeralResource(
            buffer,
            media_type=media_type,
            name=name,
            on_revoke=revoked,
        )
        with self._lock:
            self._live[resource.handle_id] = resource
        logger.debug("Created ephemeral resource %s (%d bytes)", resource.handle_id, buffer.size)
        return resource

    def revoke(self, resource: EphemeralResource | str) -> None:
        """
        Revoke a live handle.

        Raises:
            ResourceReleaseFailure: If the handle is not live in this registry
        """
        handle_id = resource if isinstance(resource, str) else resource.handle_id
        with self._lock:
            live = self._live.get(handle_id)
        if live is None:
            raise ResourceReleaseFailure(f"Handle {handle_id} is not live")
        live.revoke()
        logger.debug("Revoked ephemeral resource %s", handle_id)

    def revoke_all(self) -> int:
        """Revoke every live handle. Returns the number revoked."""
        with self._lock:
            resources = list(self._live.values())
        for resource in resources:
            resource.revoke()
        return len(resources)

    def is_live(self, handle_id: str) -> bool:
        with self._lock:
            return handle_id in self._live

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def _forget(self, handle_id: str) -> None:
        with self._lock:
            self._live.pop(handle_id, None)

    def __repr__(self) -> str:
        return f"ResourceRegistry(live={self.live_count})"
