"""Property-based tests for the wire codec, bencode and bitfields."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

pytestmark = [pytest.mark.property, pytest.mark.core]

from peerwire.core import decode, encode
from peerwire.exceptions import BencodeError
from peerwire.peer.messages import (
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    MessageDecoder,
    PieceMessage,
    PortMessage,
    RequestMessage,
)
from peerwire.utils.bitfield import build_bitfield, parse_bitfield, validate_bitfield

u32 = st.integers(min_value=0, max_value=2**32 - 1)

messages = st.one_of(
    st.just(KeepAliveMessage()),
    st.just(ChokeMessage()),
    st.just(InterestedMessage()),
    st.builds(HaveMessage, u32),
    st.builds(BitfieldMessage, st.binary(min_size=1, max_size=32)),
    st.builds(RequestMessage, u32, u32, u32),
    st.builds(CancelMessage, u32, u32, u32),
    st.builds(PieceMessage, u32, u32, st.binary(max_size=256)),
    st.builds(PortMessage, st.integers(min_value=0, max_value=65535)),
)

bencode_values = st.recursive(
    st.integers(min_value=-(2**64), max_value=2**64) | st.binary(max_size=20),
    lambda children: st.lists(children, max_size=5) | st.dictionaries(st.binary(max_size=8), children, max_size=5),
    max_leaves=20,
)


class TestMessageStreamProperties:
    """Framing is independent of how the stream is chunked."""

    @given(st.lists(messages, max_size=10), st.lists(st.integers(min_value=0, max_value=4096), max_size=10))
    def test_any_chunking_yields_same_messages(self, sent, cuts):
        stream = b"".join(m.encode() for m in sent)
        points = sorted({min(c, len(stream)) for c in cuts} | {0, len(stream)})

        decoder = MessageDecoder()
        received = []
        for start, end in zip(points, points[1:]):
            received.extend(decoder.feed(stream[start:end]))

        assert received == sent
        assert not decoder.buffer


class TestBencodeProperties:
    """Bencode decoding invariants."""

    @given(bencode_values)
    def test_encoding_is_canonical(self, value):
        """Test re-encoding a decoded document reproduces the exact bytes."""
        data = encode(value)
        assert encode(decode(data)) == data

    @given(st.binary(max_size=64))
    def test_arbitrary_bytes_decode_or_raise_bencode_error(self, data):
        try:
            decode(data)
        except BencodeError:
            pass


class TestBitfieldProperties:
    """Bitfield construction and parsing agree."""

    @given(st.integers(min_value=1, max_value=200).flatmap(lambda n: st.tuples(st.just(n), st.sets(st.integers(0, n - 1)))))
    def test_build_parse_validate(self, case):
        num_pieces, pieces = case
        bitfield = build_bitfield(pieces, num_pieces)
        validate_bitfield(bitfield, num_pieces)
        assert parse_bitfield(bitfield, num_pieces) == pieces
