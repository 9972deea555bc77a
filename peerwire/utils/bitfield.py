"""Bitfield parsing and utilities for BitTorrent piece availability."""

from __future__ import annotations

from collections.abc import Iterable

from peerwire.exceptions import MessageError


def bitfield_length(num_pieces: int) -> int:
    """Number of bytes a bitfield for ``num_pieces`` pieces occupies."""
    return (num_pieces + 7) // 8


def parse_bitfield(bitfield: bytes, num_pieces: int) -> set[int]:
    """Parse a bitfield into a set of piece indices (bits set to 1).

    Bits are numbered big-endian within each byte as BEP 3 defines them.
    """
    pieces: set[int] = set()
    if not bitfield or num_pieces <= 0:
        return pieces
    for byte_idx, byte_val in enumerate(bitfield):
        if not byte_val:
            continue
        for bit_idx in range(8):
            piece_idx = byte_idx * 8 + bit_idx
            if piece_idx >= num_pieces:
                return pieces
            if byte_val & (1 << (7 - bit_idx)):
                pieces.add(piece_idx)
    return pieces


def build_bitfield(pieces: Iterable[int], num_pieces: int) -> bytes:
    """Build a bitfield with the given piece indices set."""
    data = bytearray(bitfield_length(num_pieces))
    for index in pieces:
        if 0 <= index < num_pieces:
            data[index // 8] |= 1 << (7 - index % 8)
    return bytes(data)


def validate_bitfield(bitfield: bytes, num_pieces: int) -> None:
    """Reject bitfields of the wrong size or with spare bits set."""
    expected = bitfield_length(num_pieces)
    if len(bitfield) != expected:
        msg = f"Bitfield must be {expected} bytes for {num_pieces} pieces, got {len(bitfield)}"
        raise MessageError(msg)
    spare = expected * 8 - num_pieces
    if spare and bitfield[-1] & ((1 << spare) - 1):
        msg = "Bitfield has spare bits set"
        raise MessageError(msg)


def count_bits(bitfield: bytes) -> int:
    """Count the number of set bits in a bitfield."""
    if not bitfield:
        return 0
    return sum(bin(b).count("1") for b in bitfield)
