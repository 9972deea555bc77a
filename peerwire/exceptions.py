"""Exception hierarchy for peerwire.

Every error carries a ``details`` dict naming the peer (``ip:port``) and/or
piece index it is attributable to. Per-peer errors close only the offending
connection; :class:`StorageFailure` and :class:`DescriptorError` are fatal to
the session.
"""

from __future__ import annotations

from typing import Any


class PeerwireError(Exception):
    """Base exception for all peerwire errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize peerwire error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(PeerwireError):
    """Network-related errors."""


class TrackerError(NetworkError):
    """Tracker communication errors."""


class PeerConnectionError(NetworkError):
    """Transport failure on a peer connection."""


class ConnectionRefusedPeerError(PeerConnectionError):
    """The peer refused the transport connection."""


class ConnectionResetPeerError(PeerConnectionError):
    """The peer reset or closed the transport mid-session."""


class PeerTimeoutError(PeerwireError):
    """Handshake, block request or inactivity timeout."""


class ProtocolViolation(PeerwireError):
    """Malformed or out-of-protocol data from a peer."""


class HandshakeError(ProtocolViolation):
    """Handshake protocol errors."""


class MessageError(ProtocolViolation):
    """Message parsing/serialization errors."""


class HashMismatch(PeerwireError):
    """A completed piece did not hash to its expected digest."""

    def __init__(
        self,
        piece_index: int,
        peer_keys: set[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        """Initialize hash mismatch for a piece."""
        self.piece_index = piece_index
        self.peer_keys = set(peer_keys or ())
        merged = {"piece": piece_index, "peers": sorted(self.peer_keys)}
        merged.update(details or {})
        super().__init__(f"Hash mismatch for piece {piece_index}", merged)


class StorageFailure(PeerwireError):
    """Durable storage could not be read or written."""


class ValidationError(PeerwireError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class DescriptorError(ValidationError):
    """Torrent metadata could not be parsed into a descriptor."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""
