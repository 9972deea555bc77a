"""Choking strategies.

A strategy sees immutable snapshots of the connected peers and decides who
gets an upload slot. It never touches connections, so it is easy to test
and to swap.
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerSnapshot:
    """Point-in-time view of a peer used for choking decisions."""

    key: str
    download_rate: float  # what the peer gave us, bytes/s
    upload_rate: float  # what we gave the peer, bytes/s
    interested: bool
    connected_at: float
    am_choking: bool = True
    strikes: int = 0


@dataclass(frozen=True)
class ChokeDecision:
    """Regular upload slots plus the optimistic slot."""

    unchoke: frozenset[str]
    optimistic: str | None = None

    @property
    def unchoked(self) -> frozenset[str]:
        """Every peer that ends up unchoked."""
        if self.optimistic is None:
            return self.unchoke
        return self.unchoke | {self.optimistic}


class ChokeStrategy(ABC):
    """Decides which peers to unchoke each round."""

    @abstractmethod
    def decide(self, snapshots: Sequence[PeerSnapshot], tick: int, *, seeding: bool = False) -> ChokeDecision:
        """Return the peers to unchoke for round ``tick``."""


class TitForTatStrategy(ChokeStrategy):
    """Reciprocate the best uploaders and rotate one optimistic slot.

    Interested peers are ranked by the rate they send to us (by the rate we
    send to them once we are seeding) and the top ``upload_slots`` are
    unchoked. Every ``optimistic_ticks`` rounds one of the remaining
    interested peers is picked at random; newly connected peers are
    ``new_peer_weight`` times as likely so they get a chance to prove
    themselves, and peers with hash-failure strikes are only picked when no
    one else is available.
    """

    def __init__(
        self,
        upload_slots: int = 4,
        optimistic_ticks: int = 3,
        new_peer_window: float = 60.0,
        new_peer_weight: int = 3,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.upload_slots = upload_slots
        self.optimistic_ticks = max(1, optimistic_ticks)
        self.new_peer_window = new_peer_window
        self.new_peer_weight = new_peer_weight
        self._rng = rng or random.Random()  # nosec B311 - peer rotation, not security sensitive
        self._clock = clock
        self.optimistic: str | None = None

    @classmethod
    def from_config(cls, config, **kwargs) -> TitForTatStrategy:
        choking = config.choking
        return cls(
            upload_slots=choking.upload_slots,
            optimistic_ticks=choking.optimistic_unchoke_ticks,
            new_peer_window=choking.new_peer_window,
            new_peer_weight=choking.new_peer_weight,
            **kwargs,
        )

    def decide(self, snapshots: Sequence[PeerSnapshot], tick: int, *, seeding: bool = False) -> ChokeDecision:
        interested = [s for s in snapshots if s.interested]
        if seeding:
            ranked = sorted(interested, key=lambda s: (-s.upload_rate, s.key))
        else:
            ranked = sorted(interested, key=lambda s: (-s.download_rate, s.key))
        regular = frozenset(s.key for s in ranked[: self.upload_slots])
        remaining = [s for s in interested if s.key not in regular]

        keep = self.optimistic in {s.key for s in remaining}
        if tick % self.optimistic_ticks == 0 or not keep:
            self.optimistic = self._pick_optimistic(remaining)
            if self.optimistic is not None:
                logger.debug("New optimistic unchoke: %s", self.optimistic)
        return ChokeDecision(unchoke=regular, optimistic=self.optimistic)

    def _pick_optimistic(self, candidates: list[PeerSnapshot]) -> str | None:
        pool = [s for s in candidates if s.strikes == 0] or candidates
        if not pool:
            return None
        pool.sort(key=lambda s: s.key)
        now = self._clock()
        weights = [
            self.new_peer_weight if now - s.connected_at < self.new_peer_window else 1
            for s in pool
        ]
        return self._rng.choices(pool, weights=weights, k=1)[0].key
