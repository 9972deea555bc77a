"""Upload slot allocation (choking)."""

from __future__ import annotations

from peerwire.choke.scheduler import ChokeScheduler
from peerwire.choke.strategy import (
    ChokeDecision,
    ChokeStrategy,
    PeerSnapshot,
    TitForTatStrategy,
)

__all__ = [
    "ChokeDecision",
    "ChokeScheduler",
    "ChokeStrategy",
    "PeerSnapshot",
    "TitForTatStrategy",
]
