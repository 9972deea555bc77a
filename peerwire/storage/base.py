"""Storage interface and the in-memory implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod

from peerwire.exceptions import StorageFailure


class Storage(ABC):
    """Byte-addressed storage for a torrent's content.

    Offsets are positions in the torrent's global byte space (pieces laid end
    to end).
    """

    @abstractmethod
    async def write_block(self, offset: int, data: bytes) -> None:
        """Write ``data`` at ``offset``."""

    @abstractmethod
    async def read_block(self, offset: int, length: int) -> bytes:
        """Read ``length`` bytes at ``offset``."""

    async def contains(self, offset: int, length: int) -> bool:
        """Whether the region is backed by stored data that can be rechecked."""
        return True

    async def flush(self) -> None:
        """Flush buffered writes."""

    async def close(self) -> None:
        """Release resources."""


class MemoryStorage(Storage):
    """Storage backed by a single ``bytearray``."""

    def __init__(self, size: int, data: bytes | None = None):
        if data is not None and len(data) != size:
            msg = f"Initial data is {len(data)} bytes, expected {size}"
            raise StorageFailure(msg)
        self.size = size
        self.buffer = bytearray(data) if data is not None else bytearray(size)
        self.closed = False

    def _check(self, offset: int, length: int) -> None:
        if self.closed:
            msg = "Storage is closed"
            raise StorageFailure(msg)
        if offset < 0 or length < 0 or offset + length > self.size:
            msg = f"Region {offset}+{length} outside storage of {self.size} bytes"
            raise StorageFailure(msg, {"offset": offset, "length": length})

    async def write_block(self, offset: int, data: bytes) -> None:
        self._check(offset, len(data))
        self.buffer[offset : offset + len(data)] = data

    async def read_block(self, offset: int, length: int) -> bytes:
        self._check(offset, length)
        return bytes(self.buffer[offset : offset + length])

    async def close(self) -> None:
        self.closed = True
