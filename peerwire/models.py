"""Pydantic models for peerwire.

Provides validated data models for the torrent descriptor, peers and the
configuration tree.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DIGEST_SIZE = 20


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MessageType(int, Enum):
    """BitTorrent message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8
    PORT = 9


class PeerInfo(BaseModel):
    """Peer address and identity."""

    ip: str = Field(..., description="Peer IP address")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")
    peer_id: bytes | None = Field(None, description="Peer ID")

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v):
        """Validate IP address format."""
        if not v:
            msg = "IP address cannot be empty"
            raise ValueError(msg)
        return v

    @classmethod
    def parse(cls, address: str) -> PeerInfo:
        """Build peer info from a ``host:port`` string."""
        host, sep, port = address.rpartition(":")
        if not sep or not host:
            msg = f"Expected host:port, got {address!r}"
            raise ValueError(msg)
        return cls(ip=host.strip("[]"), port=int(port))

    @property
    def key(self) -> str:
        """Stable key used to address this peer across components."""
        return f"{self.ip}:{self.port}"

    def __str__(self) -> str:
        """String representation of peer info."""
        return self.key

    def __hash__(self) -> int:
        """Hash peer info for use as dictionary key."""
        return hash((self.ip, self.port))

    def __eq__(self, other) -> bool:
        """Equality comparison for peer info."""
        if not isinstance(other, PeerInfo):
            return False
        return self.ip == other.ip and self.port == other.port


class FileEntry(BaseModel):
    """One file of the torrent's content, located in the global byte space."""

    model_config = ConfigDict(frozen=True)

    path: list[str] = Field(..., min_length=1, description="Path components")
    length: int = Field(..., ge=0, description="File length in bytes")
    offset: int = Field(0, ge=0, description="Offset of the file in the torrent")
    md5sum: str | None = Field(None, description="Optional MD5 of the file, 32 hex digits")


class TorrentDescriptor(BaseModel):
    """Immutable parsed metadata for one torrent session."""

    model_config = ConfigDict(frozen=True)

    info_hash: bytes = Field(
        ...,
        min_length=DIGEST_SIZE,
        max_length=DIGEST_SIZE,
        description="SHA-1 of the bencoded info dictionary",
    )
    name: str = Field(..., description="Torrent name")
    piece_length: int = Field(..., gt=0, description="Nominal piece length")
    piece_hashes: list[bytes] = Field(..., description="Ordered piece digests")
    total_length: int = Field(..., ge=0, description="Total content length")
    files: list[FileEntry] = Field(default_factory=list, description="File layout")
    announce: str | None = Field(None, description="Primary tracker URL")
    announce_list: list[list[str]] | None = Field(None, description="Tracker tiers")
    private: bool = Field(False, description="Private torrent flag")
    creation_date: int | None = Field(None, description="Creation time, seconds since the UNIX epoch")
    comment: str | None = Field(None, description="Free-form comment of the author")
    created_by: str | None = Field(None, description="Program that created the torrent")
    encoding: str | None = Field(None, description="String encoding used for the pieces field")

    @field_validator("piece_hashes")
    @classmethod
    def validate_piece_hashes(cls, v):
        """Each piece hash must be a 20-byte digest."""
        for index, digest in enumerate(v):
            if len(digest) != DIGEST_SIZE:
                msg = f"Piece hash {index} must be {DIGEST_SIZE} bytes, got {len(digest)}"
                raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_layout(self) -> TorrentDescriptor:
        """Piece count and file layout must agree with the total length."""
        expected = -(-self.total_length // self.piece_length)
        if expected != len(self.piece_hashes):
            msg = (
                f"Expected {expected} piece hashes for {self.total_length} bytes, "
                f"got {len(self.piece_hashes)}"
            )
            raise ValueError(msg)
        if self.files and sum(f.length for f in self.files) != self.total_length:
            msg = "File lengths do not add up to the total length"
            raise ValueError(msg)
        return self

    @property
    def num_pieces(self) -> int:
        """Number of pieces."""
        return len(self.piece_hashes)

    def piece_size(self, index: int) -> int:
        """Length of piece ``index``; the last piece may be shorter."""
        if index < 0 or index >= self.num_pieces:
            msg = f"Piece index {index} out of range"
            raise IndexError(msg)
        if index == self.num_pieces - 1:
            return self.total_length - index * self.piece_length
        return self.piece_length

    def piece_offset(self, index: int) -> int:
        """Offset of piece ``index`` in the global byte space."""
        return index * self.piece_length

    def block_count(self, index: int, block_size: int) -> int:
        """Number of blocks piece ``index`` splits into."""
        return -(-self.piece_size(index) // block_size)


class NetworkConfig(BaseModel):
    """Network configuration."""

    max_peers_per_torrent: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum peers per torrent",
    )
    pipeline_depth: int = Field(
        default=10,
        ge=1,
        le=128,
        description="Outstanding block requests per peer",
    )
    block_size_kib: int = Field(
        default=16,
        ge=1,
        le=64,
        description="Block size in KiB",
    )
    max_block_size_kib: int = Field(
        default=128,
        ge=16,
        le=1024,
        description="Largest block request we serve, in KiB",
    )
    listen_port: int = Field(
        default=6881,
        ge=1024,
        le=65535,
        description="Listen port for incoming peers",
    )
    listen_interface: str = Field(
        default="0.0.0.0",  # nosec B104 - default bind address for the peer listener
        description="Listen interface",
    )
    connection_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Transport connect timeout in seconds",
    )
    handshake_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Handshake timeout in seconds",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Age after which an unanswered block request is re-issued",
    )
    keep_alive_interval: float = Field(
        default=120.0,
        gt=0,
        description="Send keep-alive after this much outbound silence",
    )
    peer_timeout: float = Field(
        default=180.0,
        gt=0,
        description="Close a connection after this much inbound silence",
    )
    max_message_size: int = Field(
        default=2 * 1024 * 1024,
        ge=1024,
        description="Largest frame accepted from a peer",
    )

    @model_validator(mode="after")
    def validate_timeouts(self) -> NetworkConfig:
        """Inactivity bound must be longer than the keep-alive interval."""
        if self.peer_timeout <= self.keep_alive_interval:
            msg = "peer_timeout must exceed keep_alive_interval"
            raise ValueError(msg)
        return self


class StrategyConfig(BaseModel):
    """Piece selection configuration."""

    endgame_duplicates: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Distinct peers a block may be requested from in endgame",
    )
    random_first_piece: bool = Field(
        default=True,
        description="Pick the first piece at random among the rarest",
    )


class ChokingConfig(BaseModel):
    """Upload slot scheduling configuration."""

    unchoke_interval: float = Field(
        default=10.0,
        gt=0,
        description="Seconds between choke decisions",
    )
    upload_slots: int = Field(
        default=4,
        ge=0,
        le=100,
        description="Regular (rate-ranked) unchoke slots",
    )
    optimistic_unchoke_ticks: int = Field(
        default=3,
        ge=1,
        description="Scheduler ticks between optimistic unchoke rotations",
    )
    new_peer_window: float = Field(
        default=60.0,
        ge=0,
        description="Peers connected more recently than this count as new",
    )
    new_peer_weight: int = Field(
        default=3,
        ge=1,
        description="Selection weight of new peers for the optimistic slot",
    )
    rate_window: float = Field(
        default=20.0,
        gt=0,
        description="Sliding window in seconds for transfer rate estimates",
    )


class SecurityConfig(BaseModel):
    """Policy for peers that send corrupt data."""

    hash_failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Hash failures a peer may contribute to before it is banned",
    )
    ban_on_threshold: bool = Field(
        default=True,
        description="Disconnect and refuse peers reaching the threshold",
    )


class DiskConfig(BaseModel):
    """Disk configuration."""

    download_dir: str = Field(default=".", description="Download directory")
    hash_workers: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Threads used for piece hashing",
    )
    disk_workers: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Threads used for file I/O",
    )


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log records",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Attach a correlation id to log records",
    )
    rich_console: bool = Field(
        default=True,
        description="Render console logs with rich",
    )


class Config(BaseModel):
    """Main configuration model."""

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    choking: ChokingConfig = Field(default_factory=ChokingConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    disk: DiskConfig = Field(default_factory=DiskConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
