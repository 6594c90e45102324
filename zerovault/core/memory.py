"""
Memory Zeroization
==================

Best-effort wiping of key material and decrypted buffers.

Limitations:
- Python's memory model copies data internally (bytes objects are immutable)
- Only bytearray / memoryview buffers can be overwritten in place
- These are mitigations, not guarantees
"""

from __future__ import annotations

import ctypes


def secure_zero(data: bytearray | memoryview) -> None:
    """
    Securely zero a mutable byte buffer.

    Uses ctypes for direct memory access where possible,
    with fallback to Python-level zeroing.

    Args:
        data: Mutable byte buffer to zero
    """
    if len(data) == 0:
        return

    if isinstance(data, memoryview):
        data[:] = bytes(len(data))
        return

    try:
        addr = ctypes.addressof(
            (ctypes.c_char * len(data)).from_buffer(data)
        )
        ctypes.memset(addr, 0, len(data))
    except (TypeError, ValueError, BufferError):
        # Exported buffers (e.g. a live memoryview) refuse from_buffer
        for i in range(len(data)):
            data[i] = 0


class SecureMemoryBuffer:
    """
    Mutable byte buffer that is wiped when no longer needed.

    Usage:
        with SecureMemoryBuffer(secret_data) as buf:
            process(buf.view())
        # Data is now zeroed
    """

    __slots__ = ("_data", "_wiped", "_size")

    def __init__(self, data: bytes | bytearray) -> None:
        self._data = bytearray(data)
        self._size = len(self._data)
        self._wiped = False

    @classmethod
    def adopt(cls, data: bytearray) -> "SecureMemoryBuffer":
        """Take ownership of an existing bytearray without copying it."""
        buf = cls.__new__(cls)
        buf._data = data
        buf._size = len(data)
        buf._wiped = False
        return buf

    @property
    def size(self) -> int:
        return self._size

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def view(self) -> memoryview:
        """Read-only view over the buffer (no copy)."""
        if self._wiped:
            raise ValueError("Buffer has been wiped")
        return memoryview(self._data).toreadonly()

    def to_bytes(self) -> bytes:
        """Copy out as immutable bytes. The copy cannot be wiped."""
        if self._wiped:
            raise ValueError("Buffer has been wiped")
        return bytes(self._data)

    def wipe(self) -> None:
        """Overwrite the buffer with zeros."""
        if not self._wiped:
            secure_zero(self._data)
            self._wiped = True

    def __enter__(self) -> "SecureMemoryBuffer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.wipe()

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        if self._wiped:
            return "SecureMemoryBuffer(WIPED)"
        return f"SecureMemoryBuffer(size={self._size})"
