"""Tests for BlockAssembler verification and the offender policy."""

from __future__ import annotations

import asyncio
import hashlib

import pytest
import pytest_asyncio

pytestmark = [pytest.mark.unit, pytest.mark.piece]

from peerwire.events import HashFailed, PieceVerified, SessionFailed
from peerwire.exceptions import StorageFailure
from peerwire.models import SecurityConfig
from peerwire.piece import BlockAssembler, PieceManager, PieceStatus
from peerwire.storage import MemoryStorage

BLOCK = 16 * 1024


class FailingStorage(MemoryStorage):
    async def write_block(self, offset: int, data: bytes) -> None:
        msg = "disk full"
        raise StorageFailure(msg, {"offset": offset})


def _drain_events(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest_asyncio.fixture
async def setup(descriptor, fast_config):
    config = fast_config.model_copy(update={"security": SecurityConfig(hash_failure_threshold=2)})
    storage = MemoryStorage(descriptor.total_length)
    events: asyncio.Queue = asyncio.Queue()
    manager = PieceManager(descriptor, config)
    assembler = BlockAssembler(descriptor, manager, storage, events, config)
    yield assembler, manager, storage, events
    assembler.close()


async def _deliver(assembler, index: int, data: bytes, peers=("a",)):
    """Deliver a piece block by block, rotating through ``peers``."""
    result = None
    for position, begin in enumerate(range(0, len(data), BLOCK)):
        peer = peers[position % len(peers)]
        result = await assembler.receive_block(peer, index, begin, data[begin : begin + BLOCK])
    return result


class TestVerification:
    """Hash checks on completed pieces."""

    @pytest.mark.asyncio
    async def test_matching_piece_is_written_and_verified(self, setup, descriptor, content):
        """Test a good piece lands in storage and is announced."""
        assembler, manager, storage, events = setup
        start = descriptor.piece_offset(3)
        piece = content[start:]

        result = await _deliver(assembler, 3, piece)

        assert result.piece_complete
        assert manager.pieces[3].status is PieceStatus.VERIFIED
        assert bytes(storage.buffer[start:]) == piece
        assert hashlib.sha1(storage.buffer[start:]).digest() == descriptor.piece_hashes[3]
        [event] = _drain_events(events)
        assert isinstance(event, PieceVerified)
        assert event.piece_index == 3

    @pytest.mark.asyncio
    async def test_partial_piece_is_not_written(self, setup, content):
        assembler, manager, storage, events = setup
        result = await assembler.receive_block("a", 0, 0, content[:BLOCK])
        assert result.accepted and not result.piece_complete
        assert storage.buffer[:BLOCK] == bytes(BLOCK)
        assert events.empty()

    @pytest.mark.asyncio
    async def test_mismatch_resets_and_strikes_contributors(self, setup, descriptor, content):
        """Test a corrupt piece goes back to MISSING and every contributor is struck."""
        assembler, manager, storage, events = setup
        corrupt = bytearray(content[: descriptor.piece_length])
        corrupt[-1] ^= 0xFF

        await _deliver(assembler, 0, bytes(corrupt), peers=("a", "b"))

        assert manager.pieces[0].status is PieceStatus.MISSING
        assert storage.buffer[: descriptor.piece_length] == bytes(descriptor.piece_length)
        assert assembler.strikes == {"a": 1, "b": 1}
        assert not assembler.banned
        [event] = _drain_events(events)
        assert isinstance(event, HashFailed)
        assert event.peers == frozenset({"a", "b"})
        assert assembler.hash_failures[0].piece_index == 0

        # the piece can be downloaded again
        await _deliver(assembler, 0, content[: descriptor.piece_length], peers=("c",))
        assert manager.pieces[0].status is PieceStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_ban_at_threshold(self, setup, descriptor, content):
        """Test a peer reaching the strike threshold is banned."""
        assembler, manager, storage, events = setup
        corrupt = b"\x00" * descriptor.piece_length
        await _deliver(assembler, 0, corrupt, peers=("a",))
        assert not assembler.is_banned("a")
        await _deliver(assembler, 1, corrupt, peers=("a",))
        assert assembler.is_banned("a")
        assert len(assembler.hash_failures) == 2

        result = await assembler.receive_block("a", 2, 0, content[descriptor.piece_offset(2) :][:BLOCK])
        assert not result.accepted
        assert manager.pieces[2].status is PieceStatus.MISSING

    @pytest.mark.asyncio
    async def test_storage_failure_is_fatal(self, descriptor, fast_config, content):
        """Test a write failure posts SessionFailed and leaves the piece unverified."""
        events: asyncio.Queue = asyncio.Queue()
        manager = PieceManager(descriptor, fast_config)
        assembler = BlockAssembler(
            descriptor, manager, FailingStorage(descriptor.total_length), events, fast_config
        )
        try:
            await _deliver(assembler, 0, content[: descriptor.piece_length])
        finally:
            assembler.close()

        assert manager.pieces[0].status is PieceStatus.MISSING
        assert isinstance(assembler.failure, StorageFailure)
        [event] = _drain_events(events)
        assert isinstance(event, SessionFailed)
        assert event.error is assembler.failure


class TestRecheck:
    """Resuming from existing storage."""

    @pytest.mark.asyncio
    async def test_recheck_marks_matching_pieces(self, descriptor, fast_config, content):
        data = bytearray(content)
        start = descriptor.piece_offset(2)
        data[start : start + 10] = b"\x00" * 10
        manager = PieceManager(descriptor, fast_config)
        assembler = BlockAssembler(
            descriptor, manager, MemoryStorage(len(data), bytes(data)), asyncio.Queue(), fast_config
        )
        try:
            assert await assembler.recheck() == [0, 1, 3]
        finally:
            assembler.close()
        assert manager.verified_pieces == [0, 1, 3]
        assert manager.missing_pieces == [2]
