"""Torrent metadata: bencode codec and metainfo parsing."""

from __future__ import annotations

from peerwire.core.bencode import BencodeDecoder, decode, encode
from peerwire.core.torrent import build_metainfo, load_torrent, parse_torrent

__all__ = [
    "BencodeDecoder",
    "build_metainfo",
    "decode",
    "encode",
    "load_torrent",
    "parse_torrent",
]
