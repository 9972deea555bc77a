"""Peer wire protocol: message codec and connections."""

from __future__ import annotations

from peerwire.peer.connection import ConnectionState, PeerConnection, PeerStats
from peerwire.peer.messages import (
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
    create_message,
)

__all__ = [
    "BitfieldMessage",
    "CancelMessage",
    "ChokeMessage",
    "ConnectionState",
    "Handshake",
    "HaveMessage",
    "InterestedMessage",
    "KeepAliveMessage",
    "MessageDecoder",
    "NotInterestedMessage",
    "PeerConnection",
    "PeerMessage",
    "PeerStats",
    "PieceMessage",
    "PortMessage",
    "RequestMessage",
    "UnchokeMessage",
    "create_message",
]
