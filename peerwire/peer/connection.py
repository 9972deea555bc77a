"""Async peer connection.

One :class:`PeerConnection` per remote peer. It owns the socket: a reader
task decodes frames, a writer task drains the outbound queue, a timer task
handles keep-alives, inactivity and stale requests, and an upload task serves
block requests from storage. Everything outside the connection talks to it
through the command methods, which only enqueue.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

from peerwire.config import get_config
from peerwire.events import BlockCancelled, PeerClosed, PeerEstablished, SessionFailed
from peerwire.exceptions import (
    ConnectionRefusedPeerError,
    ConnectionResetPeerError,
    HandshakeError,
    PeerTimeoutError,
    PeerwireError,
    ProtocolViolation,
    StorageFailure,
)
from peerwire.models import PeerInfo
from peerwire.peer.messages import (
    HANDSHAKE_LENGTH,
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    MessageDecoder,
    NotInterestedMessage,
    PeerMessage,
    PieceMessage,
    PortMessage,
    RequestMessage,
    UnchokeMessage,
)
from peerwire.piece.piece_manager import BlockRequest
from peerwire.utils.bitfield import parse_bitfield, validate_bitfield
from peerwire.utils.rate import RateMeter

if TYPE_CHECKING:
    from peerwire.events import Event
    from peerwire.models import Config, TorrentDescriptor
    from peerwire.piece.assembler import BlockAssembler
    from peerwire.piece.piece_manager import PieceManager
    from peerwire.storage import Storage

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024


class ConnectionState(Enum):
    """States of a peer connection."""

    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    CLOSED = "closed"


@dataclass
class PeerStats:
    """Statistics for a peer connection."""

    download: RateMeter
    upload: RateMeter
    connected_at: float = 0.0
    last_received: float = 0.0
    last_sent: float = 0.0
    choked_since: float = 0.0  # when the peer last choked us
    dht_port: int | None = None
    requests_served: int = 0
    closed_reason: str = ""

    @property
    def download_rate(self) -> float:
        return self.download.rate

    @property
    def upload_rate(self) -> float:
        return self.upload.rate


class PeerConnection:
    """A single peer-wire session for one torrent."""

    def __init__(
        self,
        peer: PeerInfo,
        descriptor: TorrentDescriptor,
        our_peer_id: bytes,
        piece_manager: PieceManager,
        assembler: BlockAssembler,
        storage: Storage,
        events: asyncio.Queue[Event],
        config: Config | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize peer connection.

        Args:
            peer: Remote address
            descriptor: Torrent shared over this connection
            our_peer_id: 20-byte local peer id
            piece_manager: Shared piece state
            assembler: Receives downloaded blocks
            storage: Source of uploaded blocks
            events: Swarm event queue
            config: Configuration (defaults to the global one)
            clock: Monotonic clock
        """
        self.config = config or get_config()
        self.peer = peer
        self.key = peer.key
        self.descriptor = descriptor
        self.our_peer_id = our_peer_id
        self.piece_manager = piece_manager
        self.assembler = assembler
        self.storage = storage
        self.events = events
        self._clock = clock

        self.state = ConnectionState.CONNECTING
        self.am_choking = True
        self.am_interested = False
        self.peer_choking = True
        self.peer_interested = False
        self.remote_peer_id: bytes | None = None

        window = self.config.choking.rate_window
        self.stats = PeerStats(download=RateMeter(window, clock), upload=RateMeter(window, clock))
        self.stats.choked_since = clock()

        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self._remote_handshake: Handshake | None = None
        self._decoder = MessageDecoder(self.config.network.max_message_size)
        self._outbound: asyncio.Queue[PeerMessage] = asyncio.Queue()
        self._requested: set[tuple[int, int, int]] = set()
        self._uploads: deque[tuple[int, int, int]] = deque()
        self._upload_ready = asyncio.Event()
        self._first_message = True
        self._task: asyncio.Task[None] | None = None
        self._close_reason: str | None = None
        self._shutdown_done = False

    @classmethod
    def from_streams(
        cls,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *args,
        peer: PeerInfo | None = None,
        remote_handshake: Handshake | None = None,
        **kwargs,
    ) -> PeerConnection:
        """Attach an already-open transport (incoming connections).

        ``remote_handshake`` is the peer's handshake when the listener already
        read it to route the connection.
        """
        if peer is None:
            host, port = writer.get_extra_info("peername")[:2]
            peer = PeerInfo(ip=host, port=port)
        conn = cls(peer, *args, **kwargs)
        conn.reader = reader
        conn.writer = writer
        conn._remote_handshake = remote_handshake
        return conn

    def __str__(self) -> str:
        return f"PeerConnection({self.key}, state={self.state.value})"

    @property
    def is_established(self) -> bool:
        return self.state is ConnectionState.ESTABLISHED

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    # Lifecycle

    def start(self) -> asyncio.Task[None]:
        """Run the connection in a background task."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"peer-{self.key}")
        return self._task

    async def connect(self) -> None:
        """Open the TCP transport."""
        timeout = self.config.network.connection_timeout
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.peer.ip, self.peer.port),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            msg = f"Connection to {self.key} timed out after {timeout}s"
            raise PeerTimeoutError(msg, {"peer": self.key}) from e
        except OSError as e:
            msg = f"Connection to {self.key} failed: {e}"
            raise ConnectionRefusedPeerError(msg, {"peer": self.key}) from e

    async def run(self) -> None:
        """Connect if needed, handshake, then serve until closed. Never raises peer errors."""
        reason = "closed"
        error: BaseException | None = None
        try:
            if self.writer is None:
                await self.connect()
            await self._handshake()
            await self._serve()
        except asyncio.CancelledError:
            reason = self._close_reason or "cancelled"
            raise
        except PeerwireError as e:
            error = e
            reason = type(e).__name__
        except (OSError, asyncio.IncompleteReadError) as e:
            msg = f"Connection to {self.key} lost: {e!r}"
            error = ConnectionResetPeerError(msg, {"peer": self.key})
            reason = type(error).__name__
        finally:
            await self._shutdown(reason, error)

    async def _handshake(self) -> None:
        self.state = ConnectionState.HANDSHAKING
        assert self.reader is not None and self.writer is not None  # nosec B101 - set by connect/from_streams

        ours = Handshake(self.descriptor.info_hash, self.our_peer_id)
        self.writer.write(ours.encode())
        await self.writer.drain()

        theirs = self._remote_handshake
        if theirs is None:
            timeout = self.config.network.handshake_timeout
            try:
                data = await asyncio.wait_for(self.reader.readexactly(HANDSHAKE_LENGTH), timeout=timeout)
            except asyncio.TimeoutError as e:
                msg = f"Handshake with {self.key} timed out after {timeout}s"
                raise PeerTimeoutError(msg, {"peer": self.key}) from e
            except asyncio.IncompleteReadError as e:
                msg = f"Peer {self.key} closed during handshake"
                raise HandshakeError(msg, {"peer": self.key}) from e
            theirs = Handshake.decode(data)

        if theirs.info_hash != self.descriptor.info_hash:
            msg = f"Info hash mismatch from {self.key}: got {theirs.info_hash.hex()}"
            raise HandshakeError(msg, {"peer": self.key})
        if theirs.peer_id == self.our_peer_id:
            msg = "Connected to ourselves"
            raise HandshakeError(msg, {"peer": self.key})
        self.remote_peer_id = theirs.peer_id

    async def _serve(self) -> None:
        now = self._clock()
        self.state = ConnectionState.ESTABLISHED
        self.stats.connected_at = now
        self.stats.last_received = now
        self.stats.last_sent = now
        logger.info("Connected to peer %s", self.key)
        self.events.put_nowait(PeerEstablished(peer_key=self.key, peer_id=self.remote_peer_id or b"", source=self.key))

        if self.piece_manager.verified_pieces:
            self._send(BitfieldMessage(self.piece_manager.local_bitfield()))

        tasks = {
            asyncio.create_task(self._read_loop(), name=f"peer-read-{self.key}"),
            asyncio.create_task(self._write_loop(), name=f"peer-write-{self.key}"),
            asyncio.create_task(self._timer_loop(), name=f"peer-timer-{self.key}"),
            asyncio.create_task(self._upload_loop(), name=f"peer-upload-{self.key}"),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None:
                raise exc

    async def _shutdown(self, reason: str, error: BaseException | None) -> None:
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self.state = ConnectionState.CLOSED
        self.stats.closed_reason = reason
        self._uploads.clear()
        self._requested.clear()

        if self.writer is not None:
            self.writer.close()
            with contextlib.suppress(OSError, asyncio.CancelledError):
                await self.writer.wait_closed()

        self.piece_manager.on_peer_gone(self.key)

        if isinstance(error, ProtocolViolation):
            logger.warning("Closing %s: %s", self.key, error)
        elif error is not None:
            logger.info("Closing %s: %s", self.key, error)
        else:
            logger.debug("Closed %s (%s)", self.key, reason)
        self.events.put_nowait(PeerClosed(peer_key=self.key, reason=reason, error=error, source=self.key))

    # Commands (called by the swarm and the choke scheduler)

    def _send(self, message: PeerMessage) -> None:
        if not self.is_closed:
            self._outbound.put_nowait(message)

    def choke(self) -> None:
        """Choke the peer and drop its queued upload requests."""
        self._uploads.clear()
        if not self.am_choking:
            self.am_choking = True
            self._send(ChokeMessage())

    def unchoke(self) -> None:
        if self.am_choking:
            self.am_choking = False
            self._send(UnchokeMessage())

    def send_have(self, index: int) -> None:
        """Announce a newly verified piece and re-evaluate interest.

        Ignored until the connection is established: the bitfield sent then
        already carries the piece, and it must be the first message.
        """
        if not self.is_established:
            return
        self._send(HaveMessage(index))
        self.update_interest()

    def cancel(self, request: BlockRequest) -> None:
        """Withdraw a request that another peer already satisfied."""
        key = (request.piece_index, request.begin, request.length)
        if key in self._requested:
            self._requested.discard(key)
            self._send(CancelMessage(*key))
        self.fill_pipeline()

    async def close(self, reason: str = "closed") -> None:
        """Close the connection; safe to call more than once."""
        self._close_reason = reason
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        elif task is None:
            await self._shutdown(reason, None)

    def update_interest(self) -> None:
        """Send interested/not-interested when our interest changes."""
        if not self.is_established:
            return
        wanted = self.piece_manager.peer_has_wanted(self.key)
        if wanted != self.am_interested:
            self.am_interested = wanted
            self._send(InterestedMessage() if wanted else NotInterestedMessage())
        self.fill_pipeline()

    def fill_pipeline(self) -> None:
        """Request blocks until the pipeline is full or nothing is left."""
        if not self.is_established or self.peer_choking or not self.am_interested:
            return
        if self.assembler.is_banned(self.key):
            return
        while True:
            request = self.piece_manager.next_block_for(self.key)
            if request is None:
                break
            self._requested.add((request.piece_index, request.begin, request.length))
            self._send(RequestMessage(request.piece_index, request.begin, request.length))

    # Tasks

    async def _read_loop(self) -> None:
        assert self.reader is not None  # nosec B101 - set before serving
        while True:
            data = await self.reader.read(READ_CHUNK)
            if not data:
                msg = f"Peer {self.key} closed the connection"
                raise ConnectionResetPeerError(msg, {"peer": self.key})
            self.stats.last_received = self._clock()
            for message in self._decoder.feed(data):
                await self._handle_message(message)

    async def _write_loop(self) -> None:
        assert self.writer is not None  # nosec B101 - set before serving
        while True:
            message = await self._outbound.get()
            self.writer.write(message.encode())
            await self.writer.drain()
            self.stats.last_sent = self._clock()

    async def _timer_loop(self) -> None:
        network = self.config.network
        interval = min(1.0, network.keep_alive_interval / 2, network.request_timeout / 2)
        while True:
            await asyncio.sleep(interval)
            now = self._clock()
            if now - self.stats.last_received >= network.peer_timeout:
                msg = f"No message from {self.key} for {network.peer_timeout}s"
                raise PeerTimeoutError(msg, {"peer": self.key})
            if now - self.stats.last_sent >= network.keep_alive_interval and self._outbound.empty():
                self._send(KeepAliveMessage())
            expired = self.piece_manager.expire_requests(now, peer_key=self.key)
            for _, request in expired:
                key = (request.piece_index, request.begin, request.length)
                if key in self._requested:
                    self._requested.discard(key)
                    self._send(CancelMessage(*key))
            if expired:
                logger.debug("Released %s timed out requests from %s", len(expired), self.key)
            # picks up blocks released by other peers as well as our own
            self.fill_pipeline()

    async def _upload_loop(self) -> None:
        while True:
            await self._upload_ready.wait()
            self._upload_ready.clear()
            while self._uploads and not self.am_choking:
                index, begin, length = self._uploads.popleft()
                try:
                    block = await self.storage.read_block(self.descriptor.piece_offset(index) + begin, length)
                except StorageFailure as e:
                    logger.exception("Cannot serve block %s:%s to %s", index, begin, self.key)
                    self.events.put_nowait(SessionFailed(error=e, source=self.key))
                    return
                if self.am_choking:
                    break
                self._send(PieceMessage(index, begin, block))
                self.stats.upload.add(length)
                self.stats.requests_served += 1

    # Message handling

    def _check_block(self, index: int, begin: int, length: int) -> None:
        if not 0 <= index < self.descriptor.num_pieces:
            msg = f"Piece index {index} out of range"
            raise ProtocolViolation(msg, {"peer": self.key, "piece_index": index})
        max_block = self.config.network.max_block_size_kib * 1024
        if length <= 0 or length > max_block:
            msg = f"Block length {length} outside 1..{max_block}"
            raise ProtocolViolation(msg, {"peer": self.key, "piece_index": index})
        if begin + length > self.descriptor.piece_size(index):
            msg = f"Block {begin}+{length} runs past the end of piece {index}"
            raise ProtocolViolation(msg, {"peer": self.key, "piece_index": index})

    async def _handle_message(self, message: PeerMessage) -> None:
        first = self._first_message
        self._first_message = False

        if isinstance(message, KeepAliveMessage):
            self._first_message = first
        elif isinstance(message, BitfieldMessage):
            if not first:
                msg = f"Bitfield from {self.key} after other messages"
                raise ProtocolViolation(msg, {"peer": self.key})
            validate_bitfield(message.bitfield, self.descriptor.num_pieces)
            self.piece_manager.on_peer_bitfield(self.key, parse_bitfield(message.bitfield, self.descriptor.num_pieces))
            self.update_interest()
        elif isinstance(message, HaveMessage):
            self.piece_manager.on_peer_have(self.key, message.piece_index)
            self.update_interest()
        elif isinstance(message, ChokeMessage):
            self._on_choked()
        elif isinstance(message, UnchokeMessage):
            self.peer_choking = False
            logger.debug("Peer %s unchoked us", self.key)
            self.fill_pipeline()
        elif isinstance(message, InterestedMessage):
            self.peer_interested = True
        elif isinstance(message, NotInterestedMessage):
            self.peer_interested = False
        elif isinstance(message, RequestMessage):
            self._on_request(message)
        elif isinstance(message, CancelMessage):
            self._check_block(message.piece_index, message.begin, message.length)
            with contextlib.suppress(ValueError):
                self._uploads.remove((message.piece_index, message.begin, message.length))
        elif isinstance(message, PieceMessage):
            await self._on_piece(message)
        elif isinstance(message, PortMessage):
            self.stats.dht_port = message.port

    def _on_choked(self) -> None:
        self.peer_choking = True
        self.stats.choked_since = self._clock()
        released = self.piece_manager.release_peer_requests(self.key)
        self._requested.clear()
        logger.debug("Peer %s choked us, released %s requests", self.key, len(released))

    def _on_request(self, message: RequestMessage) -> None:
        self._check_block(message.piece_index, message.begin, message.length)
        if self.am_choking:
            logger.debug("Dropping request from choked peer %s", self.key)
            return
        if not self.piece_manager.has_piece(message.piece_index):
            logger.debug("Peer %s requested piece %s we do not have", self.key, message.piece_index)
            return
        self._uploads.append((message.piece_index, message.begin, message.length))
        self._upload_ready.set()

    async def _on_piece(self, message: PieceMessage) -> None:
        key = (message.piece_index, message.begin, len(message.block))
        if key not in self._requested:
            logger.debug("Ignoring unrequested block %s:%s from %s", message.piece_index, message.begin, self.key)
            return
        self._requested.discard(key)
        result = await self.assembler.receive_block(self.key, message.piece_index, message.begin, message.block)
        if result.accepted:
            self.stats.download.add(len(message.block))
        if result.cancel_peers:
            self.events.put_nowait(
                BlockCancelled(
                    request=BlockRequest(*key),
                    peers=result.cancel_peers,
                    source=self.key,
                ),
            )
        self.fill_pipeline()
