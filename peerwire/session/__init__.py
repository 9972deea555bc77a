"""Torrent sessions: swarm management and tracker announces."""

from __future__ import annotations

from peerwire.session.swarm import SwarmManager, SwarmRegistry
from peerwire.session.tracker import (
    AnnounceResult,
    AnnounceStats,
    TrackerClient,
    generate_peer_id,
)

__all__ = [
    "AnnounceResult",
    "AnnounceStats",
    "SwarmManager",
    "SwarmRegistry",
    "TrackerClient",
    "generate_peer_id",
]
