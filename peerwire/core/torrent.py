"""Torrent file parsing.

Turns a bencoded metainfo file into a :class:`TorrentDescriptor`. The info
hash is the SHA-1 of the ``info`` dictionary exactly as it appears in the
file.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from peerwire.core.bencode import BencodeDecoder, encode
from peerwire.exceptions import BencodeError, DescriptorError
from peerwire.models import DIGEST_SIZE, FileEntry, TorrentDescriptor


def _text(value: Any, field: str) -> str:
    if not isinstance(value, bytes):
        msg = f"Field {field!r} must be a string"
        raise DescriptorError(msg, {"field": field})
    return value.decode("utf-8", errors="replace")


def _integer(value: Any, field: str) -> int:
    if not isinstance(value, int) or value < 0:
        msg = f"Field {field!r} must be a non-negative integer"
        raise DescriptorError(msg, {"field": field})
    return value


def _optional_text(container: dict[bytes, Any], key: bytes) -> str | None:
    value = container.get(key)
    return None if value is None else _text(value, key.decode())


def _md5sum(entry: dict[bytes, Any]) -> str | None:
    value = _optional_text(entry, b"md5sum")
    if value is None:
        return None
    if len(value) != 32 or any(c not in "0123456789abcdefABCDEF" for c in value):
        msg = f"Field 'md5sum' must be 32 hex digits, got {value!r}"
        raise DescriptorError(msg, {"field": "md5sum"})
    return value.lower()


def _split_hashes(pieces: Any) -> list[bytes]:
    if not isinstance(pieces, bytes):
        msg = "Field 'pieces' must be a byte string"
        raise DescriptorError(msg, {"field": "pieces"})
    if len(pieces) % DIGEST_SIZE:
        msg = f"Field 'pieces' length {len(pieces)} is not a multiple of {DIGEST_SIZE}"
        raise DescriptorError(msg, {"field": "pieces"})
    return [pieces[i : i + DIGEST_SIZE] for i in range(0, len(pieces), DIGEST_SIZE)]


def _files(info: dict[bytes, Any], name: str) -> list[FileEntry]:
    if b"length" in info:
        return [FileEntry(path=[name], length=_integer(info[b"length"], "length"), md5sum=_md5sum(info))]

    raw_files = info.get(b"files")
    if not isinstance(raw_files, list) or not raw_files:
        msg = "Torrent must specify either length (single file) or files (multi-file)"
        raise DescriptorError(msg)

    files: list[FileEntry] = []
    offset = 0
    for position, entry in enumerate(raw_files):
        if not isinstance(entry, dict) or b"path" not in entry:
            msg = f"File entry {position} is malformed"
            raise DescriptorError(msg, {"file": position})
        raw_path = entry[b"path"]
        if not isinstance(raw_path, list) or not raw_path:
            msg = f"File entry {position} has an empty path"
            raise DescriptorError(msg, {"file": position})
        parts = [_text(part, "path") for part in raw_path]
        if any(part in ("", ".", "..") or "/" in part or "\\" in part for part in parts):
            msg = f"File entry {position} has an unsafe path {parts!r}"
            raise DescriptorError(msg, {"file": position})
        length = _integer(entry.get(b"length"), "length")
        files.append(FileEntry(path=[name, *parts], length=length, offset=offset, md5sum=_md5sum(entry)))
        offset += length
    return files


def _announce_list(raw: Any) -> list[list[str]] | None:
    if not isinstance(raw, list):
        return None
    tiers = []
    for tier in raw:
        if isinstance(tier, list):
            urls = [url.decode("utf-8", errors="replace") for url in tier if isinstance(url, bytes)]
            if urls:
                tiers.append(urls)
    return tiers or None


def parse_torrent(data: bytes) -> TorrentDescriptor:
    """Parse bencoded metainfo into a descriptor.

    Raises:
        DescriptorError: If the data is not a valid v1 torrent
    """
    try:
        decoder = BencodeDecoder(data)
        meta = decoder.decode()
    except BencodeError as e:
        msg = f"Failed to decode torrent: {e.message}"
        raise DescriptorError(msg, e.details) from e

    if not isinstance(meta, dict):
        msg = "Torrent metainfo must be a dictionary"
        raise DescriptorError(msg)
    info = meta.get(b"info")
    if not isinstance(info, dict):
        msg = "Missing or invalid info dictionary in torrent"
        raise DescriptorError(msg)

    for key in (b"name", b"piece length", b"pieces"):
        if key not in info:
            msg = f"Missing required key in info: {key.decode()}"
            raise DescriptorError(msg, {"field": key.decode()})

    name = _text(info[b"name"], "name")
    if name in ("", ".", "..") or "/" in name or "\\" in name:
        msg = f"Unsafe torrent name {name!r}"
        raise DescriptorError(msg, {"field": "name"})
    files = _files(info, name)
    announce = meta.get(b"announce")
    creation_date = meta.get(b"creation date")
    if creation_date is not None and not isinstance(creation_date, int):
        msg = "Field 'creation date' must be an integer"
        raise DescriptorError(msg, {"field": "creation date"})

    try:
        return TorrentDescriptor(
            info_hash=hashlib.sha1(decoder.raw(b"info")).digest(),  # nosec B324 - SHA-1 required by BitTorrent protocol (BEP 3)
            name=name,
            piece_length=_integer(info[b"piece length"], "piece length"),
            piece_hashes=_split_hashes(info[b"pieces"]),
            total_length=sum(f.length for f in files),
            files=files,
            announce=_text(announce, "announce") if announce is not None else None,
            announce_list=_announce_list(meta.get(b"announce-list")),
            private=info.get(b"private") == 1,
            creation_date=creation_date,
            comment=_optional_text(meta, b"comment"),
            created_by=_optional_text(meta, b"created by"),
            encoding=_optional_text(meta, b"encoding"),
        )
    except PydanticValidationError as e:
        msg = f"Invalid torrent layout: {e}"
        raise DescriptorError(msg) from e


def load_torrent(path: str | Path) -> TorrentDescriptor:
    """Read and parse a ``.torrent`` file."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        msg = f"Cannot read torrent file {path}: {e}"
        raise DescriptorError(msg, {"path": str(path)}) from e
    return parse_torrent(data)


def build_metainfo(
    name: str,
    content: bytes,
    piece_length: int,
    announce: str | None = None,
) -> bytes:
    """Build a single-file metainfo document for ``content``.

    Used to seed new content and by the test-suite to create fixtures.
    """
    hashes = b"".join(
        hashlib.sha1(content[i : i + piece_length]).digest()  # nosec B324 - SHA-1 required by BitTorrent protocol (BEP 3)
        for i in range(0, len(content), piece_length)
    )
    meta: dict[str, Any] = {
        "info": {
            "name": name,
            "length": len(content),
            "piece length": piece_length,
            "pieces": hashes,
        },
    }
    if announce:
        meta["announce"] = announce
    return encode(meta)
