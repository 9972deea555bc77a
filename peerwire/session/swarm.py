"""Swarm session management.

A :class:`SwarmManager` runs the download (or seeding) of one torrent: it
admits peers, owns their connections, reacts to connection and piece events,
and drives the choke scheduler. :class:`SwarmRegistry` maps info hashes to
running swarms and routes incoming connections to them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections import deque
from collections.abc import Iterable
from typing import Callable

from peerwire.choke import ChokeScheduler, TitForTatStrategy
from peerwire.config import get_config
from peerwire.events import (
    BlockCancelled,
    Event,
    HashFailed,
    PeerClosed,
    PeerEstablished,
    PieceVerified,
    SessionFailed,
)
from peerwire.exceptions import HandshakeError, PeerTimeoutError, PeerwireError, ValidationError
from peerwire.logging_config import LoggingContext, set_correlation_id
from peerwire.models import Config, PeerInfo, TorrentDescriptor
from peerwire.peer.connection import PeerConnection
from peerwire.peer.messages import HANDSHAKE_LENGTH, Handshake
from peerwire.piece import BlockAssembler, PieceManager
from peerwire.session.tracker import AnnounceStats, TrackerClient, generate_peer_id
from peerwire.storage import Storage

logger = logging.getLogger(__name__)


async def read_incoming_handshake(reader: asyncio.StreamReader, timeout: float) -> Handshake:
    """Read the handshake an incoming peer sends first."""
    try:
        data = await asyncio.wait_for(reader.readexactly(HANDSHAKE_LENGTH), timeout=timeout)
    except asyncio.TimeoutError as e:
        msg = f"No handshake within {timeout}s"
        raise PeerTimeoutError(msg) from e
    except asyncio.IncompleteReadError as e:
        msg = "Incoming peer closed during handshake"
        raise HandshakeError(msg) from e
    return Handshake.decode(data)


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


class SwarmManager:
    """One torrent session: peers, pieces, choking and storage."""

    def __init__(
        self,
        descriptor: TorrentDescriptor,
        storage: Storage,
        config: Config | None = None,
        *,
        peer_id: bytes | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize swarm manager.

        Args:
            descriptor: Torrent to download or seed
            storage: Content storage
            config: Configuration (defaults to the global one)
            peer_id: Our 20-byte peer id (generated when omitted)
            rng: Random source for piece and optimistic-unchoke choices
            clock: Monotonic clock
        """
        self.config = config or get_config()
        self.descriptor = descriptor
        self.storage = storage
        self.peer_id = peer_id or generate_peer_id()
        self._clock = clock

        self.events: asyncio.Queue[Event] = asyncio.Queue()
        self.piece_manager = PieceManager(descriptor, self.config, rng=rng, clock=clock)
        self.assembler = BlockAssembler(descriptor, self.piece_manager, storage, self.events, self.config)
        self.strategy = TitForTatStrategy.from_config(self.config, rng=rng, clock=clock)
        self.scheduler = ChokeScheduler(
            self.strategy,
            lambda: list(self.peers.values()),
            self.config.choking.unchoke_interval,
            strikes=lambda key: self.assembler.strikes[key],
            seeding=lambda: self.piece_manager.is_complete,
        )

        self.peers: dict[str, PeerConnection] = {}
        self.candidates: deque[PeerInfo] = deque()
        self.uploaded_closed = 0

        self._complete = asyncio.Event()
        self._failure: BaseException | None = None
        self._event_task: asyncio.Task[None] | None = None
        self._announce_task: asyncio.Task[None] | None = None
        self._tracker: TrackerClient | None = None
        self._server: asyncio.Server | None = None
        self._started = False
        self._stopped = False

    def __str__(self) -> str:
        return f"SwarmManager({self.descriptor.name}, peers={len(self.peers)})"

    @property
    def info_hash(self) -> bytes:
        return self.descriptor.info_hash

    @property
    def max_peers(self) -> int:
        return self.config.network.max_peers_per_torrent

    @property
    def is_complete(self) -> bool:
        return self.piece_manager.is_complete

    # Admission

    def _new_connection(self, peer: PeerInfo) -> PeerConnection:
        return PeerConnection(
            peer,
            self.descriptor,
            self.peer_id,
            self.piece_manager,
            self.assembler,
            self.storage,
            self.events,
            self.config,
            clock=self._clock,
        )

    def _admit(self, conn: PeerConnection) -> None:
        self.peers[conn.key] = conn
        conn.start()

    def _is_failing(self, conn: PeerConnection, now: float) -> bool:
        """Struck for bad data, giving us nothing, or choking us for too long."""
        if self.assembler.strikes[conn.key] or conn.stats.download_rate <= 0:
            return True
        return conn.peer_choking and now - conn.stats.choked_since >= self.config.choking.new_peer_window

    def _eviction_candidate(self) -> PeerConnection | None:
        """Least useful failing peer that has been connected long enough to judge.

        A productive peer is never replaced; a new candidate waits for a slot
        instead.
        """
        now = self._clock()
        window = self.config.choking.new_peer_window
        eligible = [
            c
            for c in self.peers.values()
            if c.is_established and now - c.stats.connected_at >= window and self._is_failing(c, now)
        ]
        if not eligible:
            return None

        def usefulness(c: PeerConnection) -> tuple[int, float, float]:
            choked_since = c.stats.choked_since if c.peer_choking else now
            return (-self.assembler.strikes[c.key], c.stats.download_rate, choked_since)

        return min(eligible, key=usefulness)

    async def add_peers(self, addresses: Iterable[PeerInfo | str]) -> list[PeerConnection]:
        """Admit peers first-come up to the connection cap.

        Banned and already known peers are skipped. Once the cap is reached a
        candidate may replace a connected peer that is failing (struck, idle or
        choking us past ``new_peer_window``), at most once per call; the rest
        wait in the candidate pool.
        """
        admitted: list[PeerConnection] = []
        evicted = False
        for address in addresses:
            try:
                peer = address if isinstance(address, PeerInfo) else PeerInfo.parse(address)
            except ValueError:
                logger.debug("Ignoring malformed peer address %r", address)
                continue
            if self._stopped or self._failure is not None:
                break
            if self.assembler.is_banned(peer.key) or peer.key in self.peers:
                continue
            if any(c.key == peer.key for c in self.candidates):
                continue

            if len(self.peers) < self.max_peers:
                conn = self._new_connection(peer)
                self._admit(conn)
                admitted.append(conn)
                continue

            victim = None if evicted else self._eviction_candidate()
            if victim is not None:
                evicted = True
                logger.info("Evicting %s in favour of %s", victim.key, peer.key)
                self.peers.pop(victim.key, None)
                self.uploaded_closed += victim.stats.upload.total
                await victim.close("evicted")
                conn = self._new_connection(peer)
                self._admit(conn)
                admitted.append(conn)
            else:
                self.candidates.append(peer)
        return admitted

    def _fill_from_candidates(self) -> None:
        while self.candidates and len(self.peers) < self.max_peers and not self._stopped and self._failure is None:
            peer = self.candidates.popleft()
            if peer.key in self.peers or self.assembler.is_banned(peer.key):
                continue
            self._admit(self._new_connection(peer))

    async def handle_incoming(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        remote_handshake: Handshake | None = None,
    ) -> PeerConnection | None:
        """Attach an incoming transport, or refuse it."""
        host, port = writer.get_extra_info("peername")[:2]
        peer = PeerInfo(ip=host, port=port)
        if (
            self._stopped
            or self._failure is not None
            or len(self.peers) >= self.max_peers
            or self.assembler.is_banned(peer.key)
            or peer.key in self.peers
        ):
            logger.debug("Refusing incoming connection from %s", peer.key)
            await _close_writer(writer)
            return None
        conn = PeerConnection.from_streams(
            reader,
            writer,
            self.descriptor,
            self.peer_id,
            self.piece_manager,
            self.assembler,
            self.storage,
            self.events,
            self.config,
            peer=peer,
            remote_handshake=remote_handshake,
            clock=self._clock,
        )
        self._admit(conn)
        return conn

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            handshake = await read_incoming_handshake(reader, self.config.network.handshake_timeout)
        except PeerwireError as e:
            logger.debug("Dropping incoming connection: %s", e)
            await _close_writer(writer)
            return
        if handshake.info_hash != self.info_hash:
            logger.debug("Dropping incoming connection for unknown torrent %s", handshake.info_hash.hex())
            await _close_writer(writer)
            return
        await self.handle_incoming(reader, writer, handshake)

    async def start_server(self, host: str | None = None, port: int | None = None) -> asyncio.Server:
        """Listen for incoming peers."""
        network = self.config.network
        self._server = await asyncio.start_server(
            self._on_client,
            host or network.listen_interface,
            network.listen_port if port is None else port,
        )
        sockname = self._server.sockets[0].getsockname()
        logger.info("Listening for peers on %s:%s", sockname[0], sockname[1])
        return self._server

    @property
    def listen_port(self) -> int:
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self.config.network.listen_port

    # Events

    async def _process_events(self) -> None:
        while True:
            event = await self.events.get()
            try:
                await self._handle_event(event)
            except PeerwireError as e:
                logger.warning("Error handling %s: %s", event.event_type, e)

    async def _handle_event(self, event: Event) -> None:
        if isinstance(event, PeerEstablished):
            if self.assembler.is_banned(event.peer_key):
                conn = self.peers.get(event.peer_key)
                if conn is not None:
                    await conn.close("banned")
        elif isinstance(event, PeerClosed):
            conn = self.peers.get(event.peer_key)
            if conn is not None and conn.is_closed:
                del self.peers[event.peer_key]
                self.uploaded_closed += conn.stats.upload.total
            self._refill()
            self._fill_from_candidates()
        elif isinstance(event, PieceVerified):
            for conn in list(self.peers.values()):
                conn.send_have(event.piece_index)
            if self.piece_manager.is_complete and not self._complete.is_set():
                logger.info("Download of %s complete", self.descriptor.name)
                self._complete.set()
        elif isinstance(event, HashFailed):
            for peer_key in event.peers:
                conn = self.peers.get(peer_key)
                if conn is not None and self.assembler.is_banned(peer_key):
                    await conn.close("banned")
            self._refill()
        elif isinstance(event, BlockCancelled):
            for peer_key in event.peers:
                conn = self.peers.get(peer_key)
                if conn is not None and event.request is not None:
                    conn.cancel(event.request)
        elif isinstance(event, SessionFailed):
            if self._failure is None:
                self._failure = event.error
                logger.error("Session for %s failed: %s", self.descriptor.name, event.error)
                await self._end_session()
            self._complete.set()

    async def _end_session(self) -> None:
        """Stop exchanging data after a fatal error; :meth:`stop` still releases resources."""
        await self.scheduler.stop()
        if self._announce_task is not None:
            self._announce_task.cancel()
        connections = list(self.peers.values())
        self.peers.clear()
        self.candidates.clear()
        await asyncio.gather(*(c.close("session failed") for c in connections))
        self.uploaded_closed += sum(c.stats.upload.total for c in connections)

    def _refill(self) -> None:
        """Re-evaluate interest and pipelines after requests were released."""
        for conn in list(self.peers.values()):
            conn.update_interest()

    # Lifecycle

    async def start(self, *, listen: bool = False, tracker: TrackerClient | None = None) -> None:
        """Recheck storage, then start the event loop and the choke scheduler."""
        if self._started:
            return
        self._started = True
        set_correlation_id(self.info_hash.hex()[:16])
        with LoggingContext("recheck", logger, torrent=self.descriptor.name):
            await self.assembler.recheck()
        if self.piece_manager.is_complete:
            logger.info("All pieces present, seeding %s", self.descriptor.name)
            self._complete.set()

        self._event_task = asyncio.create_task(self._process_events(), name="swarm-events")
        self.scheduler.start()
        if listen:
            await self.start_server()
        if tracker is not None:
            self._tracker = tracker
            self._announce_task = asyncio.create_task(self._announce_loop(tracker), name="swarm-announce")

    def announce_stats(self) -> AnnounceStats:
        uploaded = self.uploaded_closed + sum(c.stats.upload.total for c in self.peers.values())
        return AnnounceStats(
            uploaded=uploaded,
            downloaded=self.piece_manager.downloaded_bytes,
            left=self.piece_manager.bytes_left,
            port=self.listen_port,
        )

    async def _announce_loop(self, tracker: TrackerClient) -> None:
        event = "started"
        completed_sent = self.is_complete
        while True:
            try:
                result = await tracker.announce(self.descriptor, self.announce_stats(), event)
            except PeerwireError as e:
                interval = tracker.retry_delay(self.descriptor)
                logger.warning("Announce failed, retrying in %.0fs: %s", interval, e)
            else:
                await self.add_peers(result.peers)
                interval = max(result.interval, 1)
            event = ""
            if completed_sent:
                await asyncio.sleep(interval)
                continue
            try:
                await asyncio.wait_for(self._complete.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
            completed_sent = True
            if self._failure is None:
                event = "completed"

    async def wait_complete(self) -> None:
        """Wait until every piece is verified; re-raises a fatal storage error."""
        await self._complete.wait()
        if self._failure is not None:
            raise self._failure

    async def stop(self) -> None:
        """Stop the scheduler, close every connection and flush storage."""
        if self._stopped:
            return
        self._stopped = True
        await self.scheduler.stop()
        if self._server is not None:
            self._server.close()
        for task in (self._announce_task, self._event_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if self._tracker is not None:
            try:
                await self._tracker.announce(self.descriptor, self.announce_stats(), "stopped")
            except PeerwireError as e:
                logger.debug("Stopped announce failed: %s", e)
        await asyncio.gather(*(c.close("shutdown") for c in list(self.peers.values())))
        self.peers.clear()
        self.candidates.clear()
        if self._server is not None:
            await self._server.wait_closed()
        try:
            await self.storage.flush()
        finally:
            await self.storage.close()
            self.assembler.close()
        logger.info("Stopped swarm for %s", self.descriptor.name)

    def get_status(self) -> dict[str, object]:
        return {
            "name": self.descriptor.name,
            "info_hash": self.info_hash.hex(),
            "peers": len(self.peers),
            "candidates": len(self.candidates),
            "banned": sorted(self.assembler.banned),
            **self.piece_manager.get_stats(),
        }


class SwarmRegistry:
    """Running swarms keyed by info hash, sharing one listening socket."""

    def __init__(self, config: Config | None = None):
        self.config = config or get_config()
        self.swarms: dict[bytes, SwarmManager] = {}
        self._server: asyncio.Server | None = None

    def add(self, swarm: SwarmManager) -> None:
        if swarm.info_hash in self.swarms:
            msg = f"Torrent {swarm.info_hash.hex()} is already registered"
            raise ValidationError(msg)
        self.swarms[swarm.info_hash] = swarm

    def get(self, info_hash: bytes) -> SwarmManager | None:
        return self.swarms.get(info_hash)

    async def remove(self, info_hash: bytes) -> None:
        swarm = self.swarms.pop(info_hash, None)
        if swarm is not None:
            await swarm.stop()

    def __len__(self) -> int:
        return len(self.swarms)

    def __contains__(self, info_hash: object) -> bool:
        return info_hash in self.swarms

    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            handshake = await read_incoming_handshake(reader, self.config.network.handshake_timeout)
        except PeerwireError as e:
            logger.debug("Dropping incoming connection: %s", e)
            await _close_writer(writer)
            return
        swarm = self.swarms.get(handshake.info_hash)
        if swarm is None:
            logger.debug("Dropping incoming connection for unknown torrent %s", handshake.info_hash.hex())
            await _close_writer(writer)
            return
        await swarm.handle_incoming(reader, writer, handshake)

    async def start_server(self, host: str | None = None, port: int | None = None) -> asyncio.Server:
        network = self.config.network
        self._server = await asyncio.start_server(
            self._on_client,
            host or network.listen_interface,
            network.listen_port if port is None else port,
        )
        return self._server

    async def stop_all(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
        for info_hash in list(self.swarms):
            await self.remove(info_hash)
        if server is not None:
            await server.wait_closed()
