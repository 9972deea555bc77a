"""Piece selection, block bookkeeping and verification."""

from __future__ import annotations

from peerwire.piece.assembler import BlockAssembler
from peerwire.piece.piece_manager import (
    Block,
    BlockRequest,
    BlockResult,
    BlockStatus,
    Piece,
    PieceManager,
    PieceStatus,
)

__all__ = [
    "Block",
    "BlockAssembler",
    "BlockRequest",
    "BlockResult",
    "BlockStatus",
    "Piece",
    "PieceManager",
    "PieceStatus",
]
