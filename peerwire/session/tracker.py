"""HTTP tracker client.

Announces to HTTP trackers with aiohttp and parses compact or dictionary
peer lists. Trackers listed in ``announce-list`` are tried tier by tier.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any

import aiohttp

from peerwire.config import get_config
from peerwire.core.bencode import decode
from peerwire.exceptions import BencodeError, TrackerError
from peerwire.models import Config, PeerInfo, TorrentDescriptor

logger = logging.getLogger(__name__)

PEER_ID_PREFIX = "-PW0100-"
USER_AGENT = "peerwire/0.1.0"


def generate_peer_id(prefix: str = PEER_ID_PREFIX) -> bytes:
    """Generate a 20-byte peer id: client prefix followed by random bytes."""
    raw = prefix.encode("utf-8")[:20]
    return raw + secrets.token_bytes(20 - len(raw))


@dataclass
class AnnounceStats:
    """Transfer counters reported to the tracker."""

    uploaded: int = 0
    downloaded: int = 0
    left: int = 0
    port: int = 6881


@dataclass
class AnnounceResult:
    """Tracker response data."""

    interval: int
    peers: list[PeerInfo]
    complete: int | None = None
    incomplete: int | None = None
    tracker_id: str | None = None
    warning_message: str | None = None


@dataclass
class TrackerSession:
    """Per-tracker state."""

    url: str
    last_announce: float = 0.0
    interval: int = 1800
    tracker_id: str | None = None
    failure_count: int = 0
    backoff_delay: float = 1.0


def parse_compact_peers(peers_data: bytes) -> list[PeerInfo]:
    """Parse compact peer format: 4 bytes IPv4 address + 2 bytes port per peer."""
    if len(peers_data) % 6 != 0:
        msg = f"Invalid compact peer data length: {len(peers_data)} bytes"
        raise TrackerError(msg)

    peers = []
    for start in range(0, len(peers_data), 6):
        ip = ".".join(str(b) for b in peers_data[start : start + 4])
        port = int.from_bytes(peers_data[start + 4 : start + 6], byteorder="big")
        if port:
            peers.append(PeerInfo(ip=ip, port=port))
    return peers


def _parse_dict_peers(peers_data: list[Any]) -> list[PeerInfo]:
    peers = []
    for entry in peers_data:
        if not isinstance(entry, dict):
            continue
        ip, port = entry.get(b"ip"), entry.get(b"port")
        if not isinstance(ip, bytes) or not isinstance(port, int) or not 0 < port < 65536:
            continue
        peer_id = entry.get(b"peer id")
        peers.append(
            PeerInfo(
                ip=ip.decode("utf-8", errors="replace"),
                port=port,
                peer_id=peer_id if isinstance(peer_id, bytes) else None,
            ),
        )
    return peers


def parse_announce_response(data: bytes) -> AnnounceResult:
    """Parse a bencoded announce response.

    Raises:
        TrackerError: On a ``failure reason`` or a malformed response
    """
    try:
        decoded = decode(data)
    except BencodeError as e:
        msg = f"Failed to parse tracker response: {e.message}"
        raise TrackerError(msg) from e
    if not isinstance(decoded, dict):
        msg = "Tracker response is not a dictionary"
        raise TrackerError(msg)

    if b"failure reason" in decoded:
        reason = decoded[b"failure reason"]
        if isinstance(reason, bytes):
            reason = reason.decode("utf-8", errors="replace")
        msg = f"Tracker failure: {reason}"
        raise TrackerError(msg, {"reason": reason})

    interval = decoded.get(b"interval")
    if not isinstance(interval, int):
        msg = "Missing interval in tracker response"
        raise TrackerError(msg)

    peers_data = decoded.get(b"peers", b"")
    if isinstance(peers_data, bytes):
        peers = parse_compact_peers(peers_data)
    elif isinstance(peers_data, list):
        peers = _parse_dict_peers(peers_data)
    else:
        msg = "Invalid peers field in tracker response"
        raise TrackerError(msg)

    def _text(key: bytes) -> str | None:
        value = decoded.get(key)
        return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else None

    return AnnounceResult(
        interval=interval,
        peers=peers,
        complete=decoded.get(b"complete"),
        incomplete=decoded.get(b"incomplete"),
        tracker_id=_text(b"tracker id"),
        warning_message=_text(b"warning message"),
    )


def build_announce_url(
    base_url: str,
    info_hash: bytes,
    peer_id: bytes,
    stats: AnnounceStats,
    event: str = "",
    tracker_id: str | None = None,
) -> str:
    """Build the complete announce URL with all required parameters."""
    params = [
        ("info_hash", urllib.parse.quote_from_bytes(info_hash, safe="")),
        ("peer_id", urllib.parse.quote_from_bytes(peer_id, safe="")),
        ("port", str(stats.port)),
        ("uploaded", str(stats.uploaded)),
        ("downloaded", str(stats.downloaded)),
        ("left", str(stats.left)),
        ("compact", "1"),
    ]
    if event:
        params.append(("event", event))
    if tracker_id:
        params.append(("trackerid", urllib.parse.quote(tracker_id, safe="")))
    separator = "&" if "?" in base_url else "?"
    return base_url + separator + "&".join(f"{k}={v}" for k, v in params)


class TrackerClient:
    """Async client for HTTP(S) trackers."""

    def __init__(self, peer_id: bytes | None = None, config: Config | None = None):
        """Initialize the tracker client.

        Args:
            peer_id: Our 20-byte peer id (generated when omitted)
            config: Configuration (defaults to the global one)
        """
        self.config = config or get_config()
        self.peer_id = peer_id or generate_peer_id()
        self.session: aiohttp.ClientSession | None = None
        self.sessions: dict[str, TrackerSession] = {}

    async def start(self) -> None:
        """Create the HTTP session."""
        if self.session is not None:
            return
        timeout = aiohttp.ClientTimeout(
            total=self.config.network.connection_timeout * 3,
            connect=self.config.network.connection_timeout,
        )
        self.session = aiohttp.ClientSession(
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
        )
        logger.debug("Tracker client started")

    async def stop(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> TrackerClient:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    @staticmethod
    def tracker_urls(descriptor: TorrentDescriptor) -> list[str]:
        """HTTP tracker URLs in announce-list tier order, primary announce first."""
        urls: list[str] = []
        if descriptor.announce:
            urls.append(descriptor.announce)
        for tier in descriptor.announce_list or []:
            urls.extend(url for url in tier if url not in urls)
        return [u for u in urls if u.startswith(("http://", "https://"))]

    async def announce(
        self,
        descriptor: TorrentDescriptor,
        stats: AnnounceStats,
        event: str = "started",
    ) -> AnnounceResult:
        """Announce to the first tracker that answers.

        Raises:
            TrackerError: If no tracker could be reached
        """
        urls = self.tracker_urls(descriptor)
        if not urls:
            msg = f"Torrent {descriptor.name!r} has no HTTP tracker"
            raise TrackerError(msg)

        errors: list[str] = []
        for url in urls:
            try:
                result = await self.announce_to(url, descriptor, stats, event)
            except TrackerError as e:
                logger.warning("Announce to %s failed: %s", url, e)
                errors.append(f"{url}: {e.message}")
                continue
            logger.info("Tracker %s returned %s peers (interval %ss)", url, len(result.peers), result.interval)
            return result

        msg = "All trackers failed"
        raise TrackerError(msg, {"errors": errors})

    async def announce_to(
        self,
        url: str,
        descriptor: TorrentDescriptor,
        stats: AnnounceStats,
        event: str = "",
    ) -> AnnounceResult:
        """Announce to a single tracker URL."""
        if self.session is None:
            await self.start()
        assert self.session is not None  # nosec B101 - created by start()

        state = self.sessions.setdefault(url, TrackerSession(url=url))
        request_url = build_announce_url(url, descriptor.info_hash, self.peer_id, stats, event, state.tracker_id)
        try:
            async with self.session.get(request_url) as response:
                if response.status != 200:
                    msg = f"HTTP {response.status}: {response.reason}"
                    raise TrackerError(msg, {"url": url})
                body = await response.read()
            result = parse_announce_response(body)
        except TrackerError:
            self._record_failure(state)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._record_failure(state)
            msg = f"Network error: {e!r}"
            raise TrackerError(msg, {"url": url}) from e

        state.last_announce = time.time()
        state.interval = result.interval
        state.failure_count = 0
        state.backoff_delay = 1.0
        if result.tracker_id:
            state.tracker_id = result.tracker_id
        if result.warning_message:
            logger.warning("Tracker %s warning: %s", url, result.warning_message)
        return result

    def _record_failure(self, state: TrackerSession) -> None:
        state.failure_count += 1
        state.backoff_delay = min(state.backoff_delay * 2, 300)

    def retry_delay(self, descriptor: TorrentDescriptor) -> float:
        """Seconds to wait before announcing again after every tracker failed.

        The shortest backoff among the torrent's trackers, since the next
        announce tries all of them. Before any tracker was tried, or when
        none is usable, this is a minute.
        """
        delays = [self.sessions[url].backoff_delay for url in self.tracker_urls(descriptor) if url in self.sessions]
        return min(delays, default=60.0)
