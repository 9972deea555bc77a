"""Piece and block bookkeeping for one torrent.

Implements rarest-first piece selection, endgame mode and per-peer
availability tracking. Every method is synchronous and never awaits, so a
call is atomic with respect to the other connections sharing the event loop.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from peerwire.config import get_config
from peerwire.exceptions import ProtocolViolation
from peerwire.models import Config, TorrentDescriptor
from peerwire.utils.bitfield import build_bitfield

logger = logging.getLogger(__name__)


class PieceStatus(Enum):
    """States of a piece download."""

    MISSING = "missing"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"


class BlockStatus(Enum):
    """States of a block download."""

    NOT_REQUESTED = "not_requested"
    REQUESTED = "requested"
    RECEIVED = "received"


@dataclass
class Block:
    """A block within a piece."""

    piece_index: int
    offset: int
    length: int
    status: BlockStatus = BlockStatus.NOT_REQUESTED
    requests: dict[str, float] = field(default_factory=dict)  # peer key -> requested at
    source: str | None = None  # peer key that delivered the data
    timed_out_by: set[str] = field(default_factory=set)  # peers whose request for it expired


@dataclass
class Piece:
    """A piece and its blocks."""

    index: int
    length: int
    status: PieceStatus = PieceStatus.MISSING
    blocks: list[Block] = field(default_factory=list)

    def contributors(self) -> set[str]:
        """Peers that delivered at least one received block."""
        return {b.source for b in self.blocks if b.source is not None}

    def all_received(self) -> bool:
        return all(b.status is BlockStatus.RECEIVED for b in self.blocks)


@dataclass(frozen=True)
class BlockRequest:
    """Coordinates of one block request."""

    piece_index: int
    begin: int
    length: int


@dataclass(frozen=True)
class BlockResult:
    """Outcome of a received block.

    ``cancel_peers`` are the other peers the block was still requested from;
    the caller sends them ``cancel``.
    """

    accepted: bool
    piece_complete: bool = False
    cancel_peers: frozenset[str] = frozenset()


class PieceManager:
    """Tracks piece state, peer availability and outstanding requests."""

    def __init__(
        self,
        descriptor: TorrentDescriptor,
        config: Config | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize piece manager.

        Args:
            descriptor: Torrent being downloaded
            config: Configuration (defaults to the global one)
            rng: Random source for the first-piece pick
            clock: Monotonic clock used to timestamp requests
        """
        self.config = config or get_config()
        self.descriptor = descriptor
        self.num_pieces = descriptor.num_pieces
        self.block_size = self.config.network.block_size_kib * 1024
        self.pipeline_depth = self.config.network.pipeline_depth
        self.request_timeout = self.config.network.request_timeout
        self.endgame_duplicates = self.config.strategy.endgame_duplicates
        self.random_first_piece = self.config.strategy.random_first_piece
        self._rng = rng or random.Random()  # nosec B311 - piece choice, not security sensitive
        self._clock = clock

        self.pieces: list[Piece] = []
        for index in range(self.num_pieces):
            length = descriptor.piece_size(index)
            blocks = [
                Block(index, begin, min(self.block_size, length - begin))
                for begin in range(0, length, self.block_size)
            ]
            self.pieces.append(Piece(index, length, blocks=blocks))

        # Availability
        self.peer_pieces: dict[str, set[int]] = {}
        self.availability: list[int] = [0] * self.num_pieces

        # Outstanding requests per peer: (piece index, block position)
        self._outstanding: dict[str, set[tuple[int, int]]] = {}
        self._first_pick_done = False
        self.downloaded_bytes = 0

    # Availability

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.num_pieces:
            msg = f"Piece index {index} out of range (0..{self.num_pieces - 1})"
            raise ProtocolViolation(msg, {"piece_index": index})

    def on_peer_bitfield(self, peer_key: str, pieces: Iterable[int]) -> None:
        """Record every piece a peer's bitfield asserts."""
        pieces = set(pieces)
        for index in pieces:
            self._check_index(index)
        have = self.peer_pieces.setdefault(peer_key, set())
        for index in pieces - have:
            self.availability[index] += 1
        have |= pieces

    def on_peer_have(self, peer_key: str, index: int) -> None:
        """Record one ``have`` announcement."""
        self._check_index(index)
        have = self.peer_pieces.setdefault(peer_key, set())
        if index not in have:
            have.add(index)
            self.availability[index] += 1

    def peer_has_wanted(self, peer_key: str) -> bool:
        """Whether the peer has any piece we have not verified."""
        return any(
            self.pieces[i].status is not PieceStatus.VERIFIED
            for i in self.peer_pieces.get(peer_key, ())
        )

    # Selection

    def next_block_for(self, peer_key: str) -> BlockRequest | None:
        """Pick the next block to request from ``peer_key``, recording the request."""
        if len(self._outstanding.get(peer_key, ())) >= self.pipeline_depth:
            return None
        have = self.peer_pieces.get(peer_key)
        if not have:
            return None

        block = self._continue_in_progress(peer_key, have) or self._rarest_first(peer_key, have)
        if block is None and self._in_endgame():
            block = self._endgame_block(peer_key, have)
        if block is None:
            return None

        piece = self.pieces[block.piece_index]
        block.requests[peer_key] = self._clock()
        block.status = BlockStatus.REQUESTED
        piece.status = PieceStatus.IN_PROGRESS
        self._outstanding.setdefault(peer_key, set()).add((block.piece_index, block.offset // self.block_size))
        return BlockRequest(block.piece_index, block.offset, block.length)

    def _allowed(self, peer_key: str, block: Block) -> bool:
        """A block that timed out on a peer goes to someone else while anyone else has it."""
        return peer_key not in block.timed_out_by or self.availability[block.piece_index] <= 1

    def _first_unrequested(self, piece: Piece, peer_key: str | None = None) -> Block | None:
        for block in piece.blocks:
            if block.status is BlockStatus.NOT_REQUESTED and (peer_key is None or self._allowed(peer_key, block)):
                return block
        return None

    def _continue_in_progress(self, peer_key: str, have: set[int]) -> Block | None:
        for index in sorted(have):
            piece = self.pieces[index]
            if piece.status is PieceStatus.IN_PROGRESS:
                block = self._first_unrequested(piece, peer_key)
                if block is not None:
                    return block
        return None

    def _rarest_first(self, peer_key: str, have: set[int]) -> Block | None:
        candidates = [i for i in have if self.pieces[i].status is PieceStatus.MISSING]
        if not candidates:
            return None
        ordered = sorted(candidates, key=lambda i: (self.availability[i], i))
        if self.random_first_piece and not self._first_pick_done:
            rarest = self.availability[ordered[0]]
            first = self._rng.choice([i for i in ordered if self.availability[i] == rarest])
            ordered.remove(first)
            ordered.insert(0, first)
        for index in ordered:
            block = self._first_unrequested(self.pieces[index], peer_key)
            if block is not None:
                self._first_pick_done = True
                logger.debug("Selected piece %s (availability %s)", index, self.availability[index])
                return block
        return None

    def _in_endgame(self) -> bool:
        for piece in self.pieces:
            if piece.status is PieceStatus.MISSING:
                return False
            if piece.status is PieceStatus.IN_PROGRESS and self._first_unrequested(piece):
                return False
        return True

    def _endgame_block(self, peer_key: str, have: set[int]) -> Block | None:
        for index in sorted(have):
            piece = self.pieces[index]
            if piece.status is not PieceStatus.IN_PROGRESS:
                continue
            for block in piece.blocks:
                if (
                    block.status is BlockStatus.REQUESTED
                    and peer_key not in block.requests
                    and len(block.requests) < self.endgame_duplicates
                    and self._allowed(peer_key, block)
                ):
                    return block
        return None

    # Receipt and release

    def _find_block(self, index: int, offset: int) -> Block | None:
        if not 0 <= index < self.num_pieces or offset % self.block_size:
            return None
        blocks = self.pieces[index].blocks
        position = offset // self.block_size
        return blocks[position] if position < len(blocks) else None

    def on_block_received(self, peer_key: str, index: int, offset: int, data: bytes) -> BlockResult:
        """Mark a block received.

        Blocks that do not line up with a block boundary, arrive for a
        verified piece, or were already received are discarded.
        """
        block = self._find_block(index, offset)
        if block is None or len(data) != block.length:
            logger.debug("Discarding unexpected block %s:%s from %s", index, offset, peer_key)
            return BlockResult(accepted=False)
        piece = self.pieces[index]
        if piece.status is PieceStatus.VERIFIED or block.status is BlockStatus.RECEIVED:
            self._forget(peer_key, block)
            return BlockResult(accepted=False)

        others = frozenset(p for p in block.requests if p != peer_key)
        for holder in list(block.requests):
            self._forget(holder, block)
        block.status = BlockStatus.RECEIVED
        block.source = peer_key
        piece.status = PieceStatus.IN_PROGRESS
        self.downloaded_bytes += block.length
        return BlockResult(accepted=True, piece_complete=piece.all_received(), cancel_peers=others)

    def _forget(self, peer_key: str, block: Block) -> None:
        block.requests.pop(peer_key, None)
        outstanding = self._outstanding.get(peer_key)
        if outstanding is not None:
            outstanding.discard((block.piece_index, block.offset // self.block_size))

    def _release(self, peer_key: str, block: Block) -> None:
        self._forget(peer_key, block)
        if block.status is BlockStatus.REQUESTED and not block.requests:
            block.status = BlockStatus.NOT_REQUESTED
            piece = self.pieces[block.piece_index]
            if all(b.status is BlockStatus.NOT_REQUESTED for b in piece.blocks):
                piece.status = PieceStatus.MISSING

    def release_request(self, peer_key: str, index: int, offset: int) -> None:
        """Release a single outstanding request (e.g. the peer rejected it)."""
        block = self._find_block(index, offset)
        if block is not None and peer_key in block.requests:
            self._release(peer_key, block)

    def release_peer_requests(self, peer_key: str) -> list[BlockRequest]:
        """Release every outstanding request held by ``peer_key``."""
        released = []
        for index, position in sorted(self._outstanding.get(peer_key, ())):
            block = self.pieces[index].blocks[position]
            self._release(peer_key, block)
            released.append(BlockRequest(index, block.offset, block.length))
        return released

    def on_peer_gone(self, peer_key: str) -> None:
        """Forget a peer: release its requests and drop its availability."""
        self.release_peer_requests(peer_key)
        self._outstanding.pop(peer_key, None)
        for index in self.peer_pieces.pop(peer_key, ()):
            self.availability[index] -= 1

    def expire_requests(
        self,
        now: float | None = None,
        peer_key: str | None = None,
    ) -> list[tuple[str, BlockRequest]]:
        """Release requests older than ``request_timeout``, optionally for one peer only."""
        now = self._clock() if now is None else now
        if peer_key is None:
            owners = list(self._outstanding.items())
        else:
            owners = [(peer_key, self._outstanding.get(peer_key, set()))]
        expired = []
        for owner, outstanding in owners:
            for index, position in sorted(outstanding):
                block = self.pieces[index].blocks[position]
                requested_at = block.requests.get(owner)
                if requested_at is not None and now - requested_at >= self.request_timeout:
                    expired.append((owner, block))
        for owner, block in expired:
            block.timed_out_by.add(owner)
            self._release(owner, block)
        if expired:
            logger.debug("Expired %s stale block requests", len(expired))
        return [(p, BlockRequest(b.piece_index, b.offset, b.length)) for p, b in expired]

    def outstanding_for(self, peer_key: str) -> list[BlockRequest]:
        """Requests currently in flight to ``peer_key``."""
        result = []
        for index, position in sorted(self._outstanding.get(peer_key, ())):
            block = self.pieces[index].blocks[position]
            result.append(BlockRequest(index, block.offset, block.length))
        return result

    # Piece completion

    def mark_verified(self, index: int) -> None:
        piece = self.pieces[index]
        piece.status = PieceStatus.VERIFIED
        for block in piece.blocks:
            block.status = BlockStatus.RECEIVED
            for holder in list(block.requests):
                self._forget(holder, block)

    def reset_piece(self, index: int) -> set[str]:
        """Return a failed piece to ``MISSING``; returns its contributors."""
        piece = self.pieces[index]
        contributors = piece.contributors()
        for block in piece.blocks:
            for holder in list(block.requests):
                self._forget(holder, block)
            block.status = BlockStatus.NOT_REQUESTED
            block.source = None
            block.timed_out_by.clear()
        piece.status = PieceStatus.MISSING
        return contributors

    def load_verified(self, indices: Iterable[int]) -> None:
        """Mark pieces already present in storage as verified."""
        for index in indices:
            self._check_index(index)
            self.mark_verified(index)

    # Status

    def has_piece(self, index: int) -> bool:
        return 0 <= index < self.num_pieces and self.pieces[index].status is PieceStatus.VERIFIED

    @property
    def verified_pieces(self) -> list[int]:
        return [p.index for p in self.pieces if p.status is PieceStatus.VERIFIED]

    @property
    def missing_pieces(self) -> list[int]:
        return [p.index for p in self.pieces if p.status is not PieceStatus.VERIFIED]

    @property
    def is_complete(self) -> bool:
        return all(p.status is PieceStatus.VERIFIED for p in self.pieces)

    @property
    def progress(self) -> float:
        """Fraction of pieces verified."""
        if not self.num_pieces:
            return 1.0
        return len(self.verified_pieces) / self.num_pieces

    @property
    def bytes_left(self) -> int:
        return sum(p.length for p in self.pieces if p.status is not PieceStatus.VERIFIED)

    def local_bitfield(self) -> bytes:
        return build_bitfield(self.verified_pieces, self.num_pieces)

    def get_stats(self) -> dict[str, int | float]:
        return {
            "total_pieces": self.num_pieces,
            "verified_pieces": len(self.verified_pieces),
            "in_progress_pieces": sum(1 for p in self.pieces if p.status is PieceStatus.IN_PROGRESS),
            "progress": self.progress,
            "downloaded_bytes": self.downloaded_bytes,
            "peers": len(self.peer_pieces),
        }
