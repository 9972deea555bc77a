"""Typed session events.

Connections and the block assembler never call back into the swarm; they post
these events on the swarm's queue and the swarm reacts in its own task.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, is_dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from peerwire.logging_config import get_correlation_id

if TYPE_CHECKING:
    from peerwire.piece.piece_manager import BlockRequest


class EventType(Enum):
    """Built-in event types."""

    PEER_ESTABLISHED = "peer_established"
    PEER_CLOSED = "peer_closed"
    PIECE_VERIFIED = "piece_verified"
    HASH_FAILED = "hash_failed"
    BLOCK_CANCELLED = "block_cancelled"
    SESSION_FAILED = "session_failed"


@dataclass
class Event:
    """Base event class."""

    event_type: str = ""
    timestamp: float = field(default_factory=time.time)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source: str | None = None
    correlation_id: str | None = field(default_factory=get_correlation_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary."""
        data = {k: v for k, v in vars(self).items() if not k.startswith("_")}
        for key, value in data.items():
            if isinstance(value, (set, frozenset)):
                data[key] = sorted(value)
            elif is_dataclass(value):
                data[key] = asdict(value)
            elif isinstance(value, BaseException):
                data[key] = str(value)
        return data


@dataclass
class PeerEstablished(Event):
    """A connection completed its handshake."""

    peer_key: str = ""
    peer_id: bytes = b""

    def __post_init__(self):
        self.event_type = EventType.PEER_ESTABLISHED.value


@dataclass
class PeerClosed(Event):
    """A connection closed; ``error`` is set when it closed on a failure."""

    peer_key: str = ""
    reason: str = ""
    error: BaseException | None = None

    def __post_init__(self):
        self.event_type = EventType.PEER_CLOSED.value


@dataclass
class PieceVerified(Event):
    """A piece passed its hash check and was written to storage."""

    piece_index: int = 0

    def __post_init__(self):
        self.event_type = EventType.PIECE_VERIFIED.value


@dataclass
class HashFailed(Event):
    """A completed piece did not match its expected digest."""

    piece_index: int = 0
    peers: frozenset[str] = frozenset()

    def __post_init__(self):
        self.event_type = EventType.HASH_FAILED.value


@dataclass
class SessionFailed(Event):
    """A fatal error (storage) that ends the session."""

    error: BaseException | None = None

    def __post_init__(self):
        self.event_type = EventType.SESSION_FAILED.value


@dataclass
class BlockCancelled(Event):
    """A block arrived while other peers still had it in flight (endgame)."""

    request: BlockRequest | None = None
    peers: frozenset[str] = frozenset()

    def __post_init__(self):
        self.event_type = EventType.BLOCK_CANCELLED.value
