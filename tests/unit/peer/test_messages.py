"""Tests for peer wire protocol messages."""

from __future__ import annotations

import struct

import pytest

pytestmark = [pytest.mark.unit, pytest.mark.peer]

from peerwire.exceptions import HandshakeError, MessageError
from peerwire.models import MessageType
from peerwire.peer import (
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    MessageDecoder,
    NotInterestedMessage,
    PieceMessage,
    PortMessage,
    RequestMessage,
    UnchokeMessage,
    create_message,
)


class TestHandshake:
    """Test cases for Handshake."""

    def test_handshake_encode(self):
        """Test encoding handshake to bytes."""
        info_hash = b"info_hash_20_bytes__"
        peer_id = b"peer_id_20_bytes____"

        encoded = Handshake(info_hash, peer_id).encode()

        assert len(encoded) == 68
        assert encoded[0] == 19
        assert encoded[1:20] == b"BitTorrent protocol"
        assert encoded[20:28] == b"\x00" * 8
        assert encoded[28:48] == info_hash
        assert encoded[48:68] == peer_id

    def test_handshake_decode_preserves_reserved(self):
        """Test extension bits survive decoding without being interpreted."""
        reserved = b"\x00\x00\x00\x00\x00\x10\x00\x05"
        data = Handshake(b"a" * 20, b"b" * 20, reserved).encode()

        decoded = Handshake.decode(data)

        assert decoded.info_hash == b"a" * 20
        assert decoded.peer_id == b"b" * 20
        assert decoded.reserved == reserved

    def test_handshake_invalid_lengths(self):
        """Test handshake field length validation."""
        with pytest.raises(HandshakeError, match="Info hash must be 20 bytes"):
            Handshake(b"short", b"x" * 20)
        with pytest.raises(HandshakeError, match="Peer ID must be 20 bytes"):
            Handshake(b"x" * 20, b"x" * 21)

    def test_handshake_decode_errors(self):
        """Test decoding rejects bad length, protocol length and protocol string."""
        good = Handshake(b"a" * 20, b"b" * 20).encode()
        with pytest.raises(HandshakeError, match="68 bytes"):
            Handshake.decode(good[:-1])
        with pytest.raises(HandshakeError, match="protocol length"):
            Handshake.decode(b"\x12" + good[1:])
        with pytest.raises(HandshakeError, match="protocol string"):
            Handshake.decode(good[:1] + b"BitTorrent protocoL" + good[20:])


class TestMessageEncoding:
    """Bit-exact encodings."""

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            (KeepAliveMessage(), b"\x00\x00\x00\x00"),
            (ChokeMessage(), b"\x00\x00\x00\x01\x00"),
            (UnchokeMessage(), b"\x00\x00\x00\x01\x01"),
            (InterestedMessage(), b"\x00\x00\x00\x01\x02"),
            (NotInterestedMessage(), b"\x00\x00\x00\x01\x03"),
            (HaveMessage(258), b"\x00\x00\x00\x05\x04\x00\x00\x01\x02"),
            (BitfieldMessage(b"\xa0"), b"\x00\x00\x00\x02\x05\xa0"),
            (PortMessage(6881), b"\x00\x00\x00\x03\x09\x1a\xe1"),
        ],
    )
    def test_fixed_encodings(self, message, expected):
        """Test each message encodes to the expected bytes."""
        assert message.encode() == expected

    def test_request_encoding(self):
        """Test request layout: length 13, id 6, index, begin, length."""
        data = RequestMessage(1, 16384, 16384).encode()
        assert data == struct.pack("!IBIII", 13, 6, 1, 16384, 16384)

    def test_piece_encoding(self):
        """Test piece layout: length 9 + block, id 7, index, begin, block."""
        data = PieceMessage(3, 0, b"abc").encode()
        assert data == struct.pack("!IBII", 12, 7, 3, 0) + b"abc"

    def test_request_and_piece_decode(self):
        """Test request and piece frames decode to their original fields."""
        request = RequestMessage.decode(RequestMessage(7, 32768, 16384).encode())
        assert (request.piece_index, request.begin, request.length) == (7, 32768, 16384)

        piece = PieceMessage.decode(PieceMessage(7, 32768, b"\x01\x02").encode())
        assert (piece.piece_index, piece.begin, piece.block) == (7, 32768, b"\x01\x02")

    def test_decode_wrong_type(self):
        """Test decoding a frame as the wrong class fails."""
        with pytest.raises(MessageError, match="Expected message ID"):
            CancelMessage.decode(RequestMessage(1, 2, 3).encode())

    def test_create_message(self):
        """Test the message factory."""
        assert create_message(MessageType.HAVE, piece_index=5) == HaveMessage(5)
        assert create_message(8, piece_index=1, begin=0, length=10) == CancelMessage(1, 0, 10)
        with pytest.raises(MessageError, match="Unknown message type"):
            create_message(20)


class TestMessageDecoder:
    """Test cases for the incremental decoder."""

    def test_split_frames(self):
        """Test messages split across reads are reassembled."""
        stream = (
            KeepAliveMessage().encode()
            + HaveMessage(1).encode()
            + PieceMessage(0, 0, b"x" * 100).encode()
        )
        decoder = MessageDecoder()
        messages = []
        for i in range(0, len(stream), 7):
            messages.extend(decoder.feed(stream[i : i + 7]))

        assert messages == [KeepAliveMessage(), HaveMessage(1), PieceMessage(0, 0, b"x" * 100)]
        assert decoder.pending == 0

    def test_partial_frame_stays_buffered(self):
        """Test incomplete frames are kept until the rest arrives."""
        decoder = MessageDecoder()
        frame = HaveMessage(9).encode()
        assert decoder.feed(frame[:6]) == []
        assert decoder.pending == 6
        assert decoder.feed(frame[6:]) == [HaveMessage(9)]

    def test_unknown_id(self):
        """Test unknown message ids raise MessageError."""
        with pytest.raises(MessageError, match="Unknown message ID"):
            MessageDecoder().feed(b"\x00\x00\x00\x01\x14")

    def test_wrong_payload_size(self):
        """Test fixed-size messages with the wrong payload size are rejected."""
        with pytest.raises(MessageError, match="payload must be"):
            MessageDecoder().feed(b"\x00\x00\x00\x04\x04\x00\x00\x01")
        with pytest.raises(MessageError, match="payload must be"):
            MessageDecoder().feed(b"\x00\x00\x00\x02\x00\x00")

    def test_oversized_frame(self):
        """Test frames above the limit fail before the payload arrives."""
        decoder = MessageDecoder(max_message_size=1024)
        with pytest.raises(MessageError, match="exceeds limit"):
            decoder.feed(struct.pack("!I", 1025))
