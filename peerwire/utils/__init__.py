"""Utility helpers shared across peerwire components."""

from __future__ import annotations

from peerwire.utils.bitfield import (
    bitfield_length,
    build_bitfield,
    count_bits,
    parse_bitfield,
    validate_bitfield,
)
from peerwire.utils.rate import RateMeter

__all__ = [
    "RateMeter",
    "bitfield_length",
    "build_bitfield",
    "count_bits",
    "parse_bitfield",
    "validate_bitfield",
]
