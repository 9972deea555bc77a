"""File-backed storage.

Maps global byte offsets onto the files of a single- or multi-file torrent.
Blocking file I/O runs on a thread pool so the event loop never waits on the
disk.
"""

from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from peerwire.exceptions import StorageFailure
from peerwire.models import TorrentDescriptor
from peerwire.storage.base import Storage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileSegment:
    """Part of an I/O request that falls inside one file."""

    path: Path
    file_offset: int  # position within the file
    data_offset: int  # position within the caller's buffer
    length: int


class FileStorage(Storage):
    """Stores torrent content in its files under ``root``."""

    def __init__(self, descriptor: TorrentDescriptor, root: str | Path, max_workers: int = 2):
        self.descriptor = descriptor
        self.root = Path(root)
        self._files = [
            (self.root.joinpath(*entry.path), entry.offset, entry.length)
            for entry in descriptor.files
        ]
        for path, _, _ in self._files:
            self._check_safe(path)
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="disk-io")
        self.closed = False
        self.bytes_written = 0

    def _check_safe(self, path: Path) -> None:
        root = self.root.resolve()
        if root not in path.resolve().parents:
            msg = f"Refusing to write outside {root}: {path}"
            raise StorageFailure(msg, {"path": str(path)})

    def segments(self, offset: int, length: int) -> list[FileSegment]:
        """Split a global region into per-file segments."""
        if offset < 0 or length < 0 or offset + length > self.descriptor.total_length:
            msg = f"Region {offset}+{length} outside torrent of {self.descriptor.total_length} bytes"
            raise StorageFailure(msg, {"offset": offset, "length": length})
        end = offset + length
        result = []
        for path, start, size in self._files:
            if size == 0 or start + size <= offset:
                continue
            if start >= end:
                break
            lo = max(offset, start)
            hi = min(end, start + size)
            result.append(FileSegment(path, lo - start, lo - offset, hi - lo))
        return result

    async def _run(self, func, *args):
        if self.closed:
            msg = "Storage is closed"
            raise StorageFailure(msg)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, func, *args)

    def _write_sync(self, offset: int, data: bytes) -> None:
        view = memoryview(data)
        for segment in self.segments(offset, len(data)):
            try:
                segment.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(segment.path, os.O_RDWR | os.O_CREAT | getattr(os, "O_BINARY", 0), 0o644)
                try:
                    os.lseek(fd, segment.file_offset, os.SEEK_SET)
                    chunk = view[segment.data_offset : segment.data_offset + segment.length]
                    while chunk:
                        written = os.write(fd, chunk)
                        chunk = chunk[written:]
                finally:
                    os.close(fd)
            except OSError as e:
                msg = f"Failed to write to {segment.path}: {e}"
                raise StorageFailure(msg, {"path": str(segment.path)}) from e
        self.bytes_written += len(data)

    def _read_sync(self, offset: int, length: int) -> bytes:
        out = bytearray(length)
        for segment in self.segments(offset, length):
            try:
                with open(segment.path, "rb") as f:
                    f.seek(segment.file_offset)
                    data = f.read(segment.length)
            except OSError as e:
                msg = f"Failed to read from {segment.path}: {e}"
                raise StorageFailure(msg, {"path": str(segment.path)}) from e
            if len(data) != segment.length:
                msg = f"Short read from {segment.path}"
                raise StorageFailure(msg, {"path": str(segment.path)})
            out[segment.data_offset : segment.data_offset + segment.length] = data
        return bytes(out)

    def _contains_sync(self, offset: int, length: int) -> bool:
        for segment in self.segments(offset, length):
            try:
                if segment.path.stat().st_size < segment.file_offset + segment.length:
                    return False
            except FileNotFoundError:
                return False
            except OSError as e:
                msg = f"Cannot stat {segment.path}: {e}"
                raise StorageFailure(msg, {"path": str(segment.path)}) from e
        return True

    def _create_empty_sync(self) -> None:
        for path, _, size in self._files:
            if size == 0:
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.touch(exist_ok=True)
                except OSError as e:
                    msg = f"Failed to create {path}: {e}"
                    raise StorageFailure(msg, {"path": str(path)}) from e

    async def write_block(self, offset: int, data: bytes) -> None:
        await self._run(self._write_sync, offset, bytes(data))

    async def read_block(self, offset: int, length: int) -> bytes:
        return await self._run(self._read_sync, offset, length)

    async def contains(self, offset: int, length: int) -> bool:
        return await self._run(self._contains_sync, offset, length)

    async def flush(self) -> None:
        await self._run(self._create_empty_sync)

    async def close(self) -> None:
        if self.closed:
            return
        await self.flush()
        self.closed = True
        self.executor.shutdown(wait=True)
        logger.debug("Closed file storage under %s", self.root)
