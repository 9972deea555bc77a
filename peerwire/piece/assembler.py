"""Block assembly and piece verification.

Received blocks are copied into a per-piece buffer. Once every block of a
piece is in, the SHA-1 digest is computed on a worker thread and compared to
the descriptor. Verified pieces are written to storage; failed pieces are
reset and every contributing peer receives a strike.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from peerwire.config import get_config
from peerwire.events import HashFailed, PieceVerified, SessionFailed
from peerwire.exceptions import HashMismatch, StorageFailure
from peerwire.piece.piece_manager import BlockResult

if TYPE_CHECKING:
    from peerwire.events import Event
    from peerwire.models import Config, TorrentDescriptor
    from peerwire.piece.piece_manager import PieceManager
    from peerwire.storage import Storage

logger = logging.getLogger(__name__)


def _sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()  # nosec B324 - SHA-1 required by BitTorrent protocol (BEP 3)


class BlockAssembler:
    """Buffers blocks, verifies pieces and keeps the offender record."""

    def __init__(
        self,
        descriptor: TorrentDescriptor,
        piece_manager: PieceManager,
        storage: Storage,
        events: asyncio.Queue[Event],
        config: Config | None = None,
    ):
        """Initialize block assembler.

        Args:
            descriptor: Torrent being assembled
            piece_manager: Piece state owner
            storage: Destination for verified pieces
            events: Queue receiving PieceVerified/HashFailed/SessionFailed
            config: Configuration (defaults to the global one)
        """
        self.config = config or get_config()
        self.descriptor = descriptor
        self.piece_manager = piece_manager
        self.storage = storage
        self.events = events
        self.hash_executor = ThreadPoolExecutor(
            max_workers=self.config.disk.hash_workers,
            thread_name_prefix="hash",
        )
        self._buffers: dict[int, bytearray] = {}
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

        self.strikes: Counter[str] = Counter()
        self.banned: set[str] = set()
        self.hash_failures: list[HashMismatch] = []
        self.failure: StorageFailure | None = None

    async def receive_block(self, peer_key: str, index: int, begin: int, data: bytes) -> BlockResult:
        """Accept a block from ``peer_key`` and verify the piece once complete."""
        if peer_key in self.banned:
            self.piece_manager.release_request(peer_key, index, begin)
            return BlockResult(accepted=False)
        result = self.piece_manager.on_block_received(peer_key, index, begin, data)
        if not result.accepted:
            return result

        buffer = self._buffers.get(index)
        if buffer is None:
            buffer = self._buffers[index] = bytearray(self.descriptor.piece_size(index))
        buffer[begin : begin + len(data)] = data

        if result.piece_complete:
            await self._complete_piece(index)
        return result

    async def _complete_piece(self, index: int) -> None:
        async with self._locks[index]:
            data = bytes(self._buffers.pop(index))
            loop = asyncio.get_running_loop()
            digest = await loop.run_in_executor(self.hash_executor, _sha1, data)

            if digest != self.descriptor.piece_hashes[index]:
                self._on_hash_mismatch(index)
                return

            try:
                await self.storage.write_block(self.descriptor.piece_offset(index), data)
            except StorageFailure as e:
                self.piece_manager.reset_piece(index)
                self.failure = e
                logger.exception("Storage failure writing piece %s", index)
                self.events.put_nowait(SessionFailed(error=e, source="assembler"))
                return

            self.piece_manager.mark_verified(index)
        logger.debug("Verified piece %s", index)
        self.events.put_nowait(PieceVerified(piece_index=index, source="assembler"))

    def _on_hash_mismatch(self, index: int) -> None:
        peers = frozenset(self.piece_manager.reset_piece(index))
        failure = HashMismatch(index, sorted(peers))
        self.hash_failures.append(failure)
        logger.warning("Hash verification failed for piece %s (peers: %s)", index, ", ".join(sorted(peers)))

        threshold = self.config.security.hash_failure_threshold
        for peer_key in peers:
            self.strikes[peer_key] += 1
            if self.config.security.ban_on_threshold and self.strikes[peer_key] >= threshold:
                if peer_key not in self.banned:
                    logger.warning("Banning peer %s after %s failed pieces", peer_key, self.strikes[peer_key])
                self.banned.add(peer_key)
        self.events.put_nowait(HashFailed(piece_index=index, peers=peers, source="assembler"))

    def is_banned(self, peer_key: str) -> bool:
        return peer_key in self.banned

    async def recheck(self) -> list[int]:
        """Hash pieces already present in storage and mark matches verified."""
        loop = asyncio.get_running_loop()
        verified = []
        for index in range(self.descriptor.num_pieces):
            offset = self.descriptor.piece_offset(index)
            length = self.descriptor.piece_size(index)
            if not await self.storage.contains(offset, length):
                continue
            data = await self.storage.read_block(offset, length)
            digest = await loop.run_in_executor(self.hash_executor, _sha1, data)
            if digest == self.descriptor.piece_hashes[index]:
                verified.append(index)
        self.piece_manager.load_verified(verified)
        logger.info("Recheck found %s of %s pieces", len(verified), self.descriptor.num_pieces)
        return verified

    def close(self) -> None:
        self._buffers.clear()
        self.hash_executor.shutdown(wait=False)
