"""Pytest configuration and shared fixtures for peerwire tests."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import random

import pytest
import pytest_asyncio

from peerwire.config import reset_config
from peerwire.core import build_metainfo, parse_torrent
from peerwire.models import (
    ChokingConfig,
    Config,
    NetworkConfig,
    ObservabilityConfig,
    StrategyConfig,
)
from peerwire.peer.messages import (
    BitfieldMessage,
    Handshake,
    MessageDecoder,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
)
from peerwire.utils.bitfield import build_bitfield


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("unit", "marks tests as unit tests"),
        ("integration", "marks tests as integration tests over loopback sockets"),
        ("core", "marks tests as bencode/metainfo tests"),
        ("peer", "marks tests as peer protocol tests"),
        ("piece", "marks tests as piece management tests"),
        ("choke", "marks tests as choking tests"),
        ("swarm", "marks tests as swarm/session tests"),
        ("tracker", "marks tests as tracker tests"),
        ("storage", "marks tests as storage tests"),
        ("config", "marks tests as configuration tests"),
        ("observability", "marks tests as logging tests"),
        ("property", "marks tests as property-based tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep the global configuration away from the developer's files and env."""
    for name in list(os.environ):
        if name.startswith("PEERWIRE_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Remove handlers installed by setup_logging so later tests start clean."""
    yield
    logger = logging.getLogger("peerwire")
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def seed_rng() -> None:
    """Deterministically seed RNGs to make tests reproducible."""
    random.seed(int(os.environ.get("PEERWIRE_TEST_SEED", "123456")))


def make_content(size: int, seed: int = 7) -> bytes:
    """Deterministic pseudo-random content of ``size`` bytes."""
    out = bytearray()
    counter = 0
    while len(out) < size:
        out += hashlib.sha256(b"%d:%d" % (seed, counter)).digest()
        counter += 1
    return bytes(out[:size])


@pytest.fixture
def fast_config() -> Config:
    """Configuration with short timers and deterministic piece choice."""
    return Config(
        network=NetworkConfig(
            pipeline_depth=4,
            block_size_kib=16,
            connection_timeout=2.0,
            handshake_timeout=2.0,
            request_timeout=5.0,
            keep_alive_interval=5.0,
            peer_timeout=10.0,
        ),
        strategy=StrategyConfig(random_first_piece=False),
        choking=ChokingConfig(unchoke_interval=0.05, upload_slots=4, new_peer_window=0.0),
        observability=ObservabilityConfig(rich_console=False),
    )


@pytest.fixture
def make_torrent():
    """Factory: ``make_torrent(content, piece_length)`` -> descriptor."""

    def _make(content: bytes, piece_length: int = 32 * 1024, name: str = "payload.bin", announce=None):
        return parse_torrent(build_metainfo(name, content, piece_length, announce=announce))

    return _make


@pytest.fixture
def content() -> bytes:
    """Four pieces of 32 KiB (two 16 KiB blocks each), the last one short."""
    return make_content(3 * 32 * 1024 + 20 * 1024)


@pytest.fixture
def descriptor(make_torrent, content):
    return make_torrent(content)


@pytest.fixture
def make_bytes():
    """Factory for deterministic content of a given size."""
    return make_content


class ScriptedPeer:
    """A remote peer on a loopback socket that follows a fixed script.

    It answers the handshake, optionally sends a bitfield and ``unchoke``,
    records every message it receives and serves requested blocks from
    ``content`` (unless ``lazy``). Pieces listed in ``corrupt`` are served
    with every byte flipped.
    """

    def __init__(
        self,
        descriptor,
        content: bytes | None = None,
        *,
        have=None,
        corrupt=(),
        unchoke: bool = True,
        lazy: bool = False,
        info_hash: bytes | None = None,
    ):
        self.descriptor = descriptor
        self.content = content
        self.have = set(range(descriptor.num_pieces)) if have is None else set(have)
        self.corrupt = set(corrupt)
        self.unchoke = unchoke
        self.lazy = lazy
        self.info_hash = info_hash or descriptor.info_hash
        self.peer_id = b"-SC0001-" + os.urandom(12)
        self.received: list = []
        self.served: list[tuple[int, int]] = []
        self.remote_handshake = None
        self.connected = asyncio.Event()
        self.closed = asyncio.Event()
        self._server: asyncio.Server | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._writers: list[asyncio.StreamWriter] = []
        self.port = 0

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    async def start(self) -> ScriptedPeer:
        self._server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    def messages(self, cls) -> list:
        return [m for m in self.received if isinstance(m, cls)]

    async def send(self, message) -> None:
        assert self._writer is not None
        self._writer.write(message.encode())
        await self._writer.drain()

    async def disconnect(self) -> None:
        for writer in self._writers:
            writer.close()

    async def stop(self) -> None:
        await self.disconnect()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._writers.append(writer)
        try:
            self.remote_handshake = Handshake.decode(await reader.readexactly(68))
            writer.write(Handshake(self.info_hash, self.peer_id).encode())
            if self.have:
                writer.write(BitfieldMessage(build_bitfield(self.have, self.descriptor.num_pieces)).encode())
            if self.unchoke:
                writer.write(UnchokeMessage().encode())
            await writer.drain()
            self.connected.set()

            decoder = MessageDecoder()
            while True:
                chunk = await reader.read(64 * 1024)
                if not chunk:
                    break
                for message in decoder.feed(chunk):
                    self.received.append(message)
                    if isinstance(message, RequestMessage) and not self.lazy:
                        await self._answer(writer, message)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()
            self.closed.set()

    async def _answer(self, writer: asyncio.StreamWriter, request) -> None:
        start = self.descriptor.piece_offset(request.piece_index) + request.begin
        block = self.content[start : start + request.length]
        if request.piece_index in self.corrupt:
            block = bytes(b ^ 0xFF for b in block)
        self.served.append((request.piece_index, request.begin))
        writer.write(PieceMessage(request.piece_index, request.begin, block).encode())
        await writer.drain()


@pytest_asyncio.fixture
async def scripted_peer():
    """Factory for started :class:`ScriptedPeer` instances, stopped at teardown."""
    peers: list[ScriptedPeer] = []

    async def _make(descriptor, content=None, **kwargs) -> ScriptedPeer:
        peer = await ScriptedPeer(descriptor, content, **kwargs).start()
        peers.append(peer)
        return peer

    yield _make
    for peer in peers:
        await peer.stop()


@pytest.fixture
def eventually():
    """Poll ``predicate`` until it holds or ``timeout`` expires."""

    async def _wait(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                msg = f"Condition not met within {timeout}s"
                raise AssertionError(msg)
            await asyncio.sleep(interval)

    return _wait
