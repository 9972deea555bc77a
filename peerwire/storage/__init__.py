"""Content storage backends."""

from __future__ import annotations

from peerwire.storage.base import MemoryStorage, Storage
from peerwire.storage.file_storage import FileSegment, FileStorage

__all__ = ["FileSegment", "FileStorage", "MemoryStorage", "Storage"]
