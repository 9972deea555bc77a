"""Peer wire protocol messages.

Handshake and message encoding/decoding. After the handshake every message is
``<4-byte big-endian length><1-byte id><payload>``; a zero length is a
keep-alive.
"""

from __future__ import annotations

import struct
from typing import Any, ClassVar

from peerwire.exceptions import HandshakeError, MessageError
from peerwire.models import MessageType

_LENGTH = struct.Struct("!I")
_HEADER = struct.Struct("!IB")
_INDEX = struct.Struct("!I")
_BLOCK = struct.Struct("!III")
_PIECE_HEADER = struct.Struct("!II")
_PORT = struct.Struct("!H")

HANDSHAKE_LENGTH = 68


class Handshake:
    """BitTorrent handshake message."""

    PROTOCOL_STRING: bytes = b"BitTorrent protocol"
    RESERVED_BYTES: bytes = b"\x00" * 8

    def __init__(self, info_hash: bytes, peer_id: bytes, reserved: bytes | None = None) -> None:
        """Initialize handshake.

        Args:
            info_hash: 20-byte SHA-1 hash of info dictionary
            peer_id: 20-byte peer ID
            reserved: 8 reserved (extension flag) bytes
        """
        if len(info_hash) != 20:
            msg = f"Info hash must be 20 bytes, got {len(info_hash)}"
            raise HandshakeError(msg)
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise HandshakeError(msg)
        reserved = self.RESERVED_BYTES if reserved is None else reserved
        if len(reserved) != 8:
            msg = f"Reserved must be 8 bytes, got {len(reserved)}"
            raise HandshakeError(msg)

        self.info_hash: bytes = bytes(info_hash)
        self.peer_id: bytes = bytes(peer_id)
        self.reserved: bytes = bytes(reserved)

    def encode(self) -> bytes:
        """Encode handshake to bytes.

        Format: <protocol len><protocol><reserved><info_hash><peer_id>
        Total: 1 + 19 + 8 + 20 + 20 = 68 bytes
        """
        return (
            struct.pack("B", len(self.PROTOCOL_STRING))
            + self.PROTOCOL_STRING
            + self.reserved
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode handshake from bytes.

        Raises:
            HandshakeError: If data is invalid
        """
        if len(data) != HANDSHAKE_LENGTH:
            msg = f"Handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}"
            raise HandshakeError(msg)

        protocol_len = data[0]
        if protocol_len != len(cls.PROTOCOL_STRING):
            msg = f"Invalid protocol length: {protocol_len}"
            raise HandshakeError(msg)

        protocol_string = data[1:20]
        if protocol_string != cls.PROTOCOL_STRING:
            msg = f"Invalid protocol string: {protocol_string!r}"
            raise HandshakeError(msg)

        # Extension bits are preserved but not interpreted.
        return cls(info_hash=data[28:48], peer_id=data[48:68], reserved=data[20:28])

    def __repr__(self) -> str:
        return f"Handshake(info_hash={self.info_hash.hex()}, peer_id={self.peer_id!r})"


class PeerMessage:
    """Base class for peer messages."""

    message_id: ClassVar[int] = -1
    payload_size: ClassVar[int | None] = 0

    def encode(self) -> bytes:
        """Encode message to bytes, including the length prefix."""
        payload = self.encode_payload()
        return _HEADER.pack(1 + len(payload), self.message_id) + payload

    def encode_payload(self) -> bytes:
        """Encode the id-specific payload."""
        return b""

    @classmethod
    def from_payload(cls, payload: bytes | memoryview) -> PeerMessage:
        """Build a message from its payload (bytes following the id)."""
        return cls()

    @classmethod
    def decode(cls, data: bytes) -> PeerMessage:
        """Decode a single complete frame of this message type."""
        if len(data) < _HEADER.size:
            msg = f"{cls.__name__} frame too short: {len(data)} bytes"
            raise MessageError(msg)
        length, message_id = _HEADER.unpack_from(data)
        if length != len(data) - 4:
            msg = f"{cls.__name__} length prefix {length} does not match frame of {len(data)} bytes"
            raise MessageError(msg)
        if message_id != cls.message_id:
            msg = f"Expected message ID {cls.message_id}, got {message_id}"
            raise MessageError(msg)
        return _build(cls, memoryview(data)[5:])

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and vars(self) == vars(other)

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items() if k != "block")
        return f"{type(self).__name__}({fields})"


class KeepAliveMessage(PeerMessage):
    """Keep-alive message (length = 0)."""

    def encode(self) -> bytes:
        """Encode keep-alive message."""
        return _LENGTH.pack(0)


class ChokeMessage(PeerMessage):
    """Choke message."""

    message_id = MessageType.CHOKE


class UnchokeMessage(PeerMessage):
    """Unchoke message."""

    message_id = MessageType.UNCHOKE


class InterestedMessage(PeerMessage):
    """Interested message."""

    message_id = MessageType.INTERESTED


class NotInterestedMessage(PeerMessage):
    """Not interested message."""

    message_id = MessageType.NOT_INTERESTED


class HaveMessage(PeerMessage):
    """Have message (announces that peer has a piece)."""

    message_id = MessageType.HAVE
    payload_size = _INDEX.size

    def __init__(self, piece_index: int):
        self.piece_index = piece_index

    def encode_payload(self) -> bytes:
        return _INDEX.pack(self.piece_index)

    @classmethod
    def from_payload(cls, payload: bytes | memoryview) -> HaveMessage:
        return cls(_INDEX.unpack(payload)[0])


class BitfieldMessage(PeerMessage):
    """Bitfield message (shows which pieces the peer has)."""

    message_id = MessageType.BITFIELD
    payload_size = None

    def __init__(self, bitfield: bytes):
        self.bitfield = bytes(bitfield)

    def encode_payload(self) -> bytes:
        return self.bitfield

    @classmethod
    def from_payload(cls, payload: bytes | memoryview) -> BitfieldMessage:
        return cls(bytes(payload))


class _BlockMessage(PeerMessage):
    """Shared layout of request and cancel: index, begin, length."""

    payload_size = _BLOCK.size

    def __init__(self, piece_index: int, begin: int, length: int):
        self.piece_index = piece_index
        self.begin = begin
        self.length = length

    def encode_payload(self) -> bytes:
        return _BLOCK.pack(self.piece_index, self.begin, self.length)

    @classmethod
    def from_payload(cls, payload: bytes | memoryview):
        return cls(*_BLOCK.unpack(payload))


class RequestMessage(_BlockMessage):
    """Request message (request a block from a piece)."""

    message_id = MessageType.REQUEST


class CancelMessage(_BlockMessage):
    """Cancel message (withdraw an earlier request)."""

    message_id = MessageType.CANCEL


class PieceMessage(PeerMessage):
    """Piece message (carries one block of data)."""

    message_id = MessageType.PIECE
    payload_size = None

    def __init__(self, piece_index: int, begin: int, block: bytes):
        self.piece_index = piece_index
        self.begin = begin
        self.block = bytes(block)

    def encode(self) -> bytes:
        """Encode piece message without copying the block twice."""
        return (
            _HEADER.pack(1 + _PIECE_HEADER.size + len(self.block), self.message_id)
            + _PIECE_HEADER.pack(self.piece_index, self.begin)
            + self.block
        )

    @classmethod
    def from_payload(cls, payload: bytes | memoryview) -> PieceMessage:
        if len(payload) < _PIECE_HEADER.size:
            msg = "Piece message too short"
            raise MessageError(msg)
        piece_index, begin = _PIECE_HEADER.unpack_from(payload)
        return cls(piece_index, begin, bytes(payload[_PIECE_HEADER.size :]))


class PortMessage(PeerMessage):
    """Port message (DHT listen port)."""

    message_id = MessageType.PORT
    payload_size = _PORT.size

    def __init__(self, port: int):
        self.port = port

    def encode_payload(self) -> bytes:
        return _PORT.pack(self.port)

    @classmethod
    def from_payload(cls, payload: bytes | memoryview) -> PortMessage:
        return cls(_PORT.unpack(payload)[0])


MESSAGE_CLASSES: dict[int, type[PeerMessage]] = {
    cls.message_id: cls
    for cls in (
        ChokeMessage,
        UnchokeMessage,
        InterestedMessage,
        NotInterestedMessage,
        HaveMessage,
        BitfieldMessage,
        RequestMessage,
        PieceMessage,
        CancelMessage,
        PortMessage,
    )
}


def _build(cls: type[PeerMessage], payload: memoryview) -> PeerMessage:
    if cls.payload_size is not None and len(payload) != cls.payload_size:
        msg = f"{cls.__name__} payload must be {cls.payload_size} bytes, got {len(payload)}"
        raise MessageError(msg)
    return cls.from_payload(payload)


def create_message(message_type: MessageType | int, **fields: Any) -> PeerMessage:
    """Create a message of ``message_type`` from keyword fields."""
    try:
        cls = MESSAGE_CLASSES[int(message_type)]
    except KeyError:
        msg = f"Unknown message type: {message_type}"
        raise MessageError(msg) from None
    return cls(**fields)


class MessageDecoder:
    """Incremental frame decoder for the post-handshake byte stream."""

    def __init__(self, max_message_size: int = 2 * 1024 * 1024):
        """Initialize message decoder.

        Args:
            max_message_size: Largest frame (excluding the length prefix) accepted
        """
        self.max_message_size = max_message_size
        self.buffer = bytearray()

    def feed(self, data: bytes | memoryview) -> list[PeerMessage]:
        """Add data to the buffer and return any complete messages.

        Raises:
            MessageError: On oversized frames, unknown ids or bad payload sizes
        """
        self.buffer.extend(data)
        messages: list[PeerMessage] = []

        while len(self.buffer) >= _LENGTH.size:
            length = _LENGTH.unpack_from(self.buffer)[0]
            if length > self.max_message_size:
                msg = f"Message length {length} exceeds limit {self.max_message_size}"
                raise MessageError(msg, {"length": length})
            if len(self.buffer) < _LENGTH.size + length:
                break

            frame = bytes(self.buffer[_LENGTH.size : _LENGTH.size + length])
            del self.buffer[: _LENGTH.size + length]
            messages.append(self.decode_frame(frame))

        return messages

    def decode_frame(self, frame: bytes) -> PeerMessage:
        """Decode one frame (length prefix already stripped)."""
        if not frame:
            return KeepAliveMessage()
        cls = MESSAGE_CLASSES.get(frame[0])
        if cls is None:
            msg = f"Unknown message ID: {frame[0]}"
            raise MessageError(msg, {"message_id": frame[0]})
        return _build(cls, memoryview(frame)[1:])

    @property
    def pending(self) -> int:
        """Bytes buffered but not yet decoded."""
        return len(self.buffer)
