"""Tests for the tit-for-tat strategy and the choke scheduler."""

from __future__ import annotations

import asyncio
import random
from collections import Counter

import pytest

pytestmark = [pytest.mark.unit, pytest.mark.choke]

from peerwire.choke import ChokeDecision, ChokeScheduler, PeerSnapshot, TitForTatStrategy


def snap(key: str, down: float = 0.0, up: float = 0.0, *, interested=True, connected_at=0.0, strikes=0):
    return PeerSnapshot(
        key=key,
        download_rate=down,
        upload_rate=up,
        interested=interested,
        connected_at=connected_at,
        strikes=strikes,
    )


def strategy(**kwargs) -> TitForTatStrategy:
    kwargs.setdefault("rng", random.Random(3))
    kwargs.setdefault("clock", lambda: 1000.0)
    return TitForTatStrategy(**kwargs)


class TestTitForTat:
    """Test cases for TitForTatStrategy."""

    def test_ranking_with_optimistic_slot(self):
        """Test rates [10, 50, 5, 30] with K=2 unchoke 50 and 30 plus one optimistic peer."""
        peers = [snap("a", 10), snap("b", 50), snap("c", 5), snap("d", 30)]
        decision = strategy(upload_slots=2, optimistic_ticks=3).decide(peers, tick=0)

        assert decision.unchoke == frozenset({"b", "d"})
        assert decision.optimistic in {"a", "c"}
        assert len(decision.unchoked) == 3

    def test_ties_break_on_key(self):
        peers = [snap("z", 10), snap("m", 10), snap("a", 10)]
        decision = strategy(upload_slots=2).decide(peers, tick=0)
        assert decision.unchoke == frozenset({"a", "m"})
        assert decision.optimistic == "z"

    def test_uninterested_peers_stay_choked(self):
        peers = [snap("a", 100, interested=False), snap("b", 1)]
        decision = strategy(upload_slots=4).decide(peers, tick=0)
        assert decision.unchoked == frozenset({"b"})
        assert decision.optimistic is None

    def test_seeding_ranks_by_upload_rate(self):
        peers = [snap("a", down=100, up=1), snap("b", down=0, up=50), snap("c", down=0, up=20)]
        decision = strategy(upload_slots=1).decide(peers, tick=0, seeding=True)
        assert decision.unchoke == frozenset({"b"})

    def test_optimistic_kept_between_rotations(self):
        """Test the optimistic peer only rotates on rotation ticks."""
        tft = strategy(upload_slots=1, optimistic_ticks=3)
        peers = [snap("top", 100)] + [snap(f"p{i}", 1) for i in range(6)]

        chosen = [tft.decide(peers, tick).optimistic for tick in range(9)]

        assert chosen[0] == chosen[1] == chosen[2]
        assert chosen[3] == chosen[4] == chosen[5]
        assert chosen[6] == chosen[7] == chosen[8]
        assert "top" not in chosen

    def test_optimistic_replaced_when_no_longer_eligible(self):
        tft = strategy(upload_slots=1, optimistic_ticks=10)
        peers = [snap("top", 100), snap("x", 1), snap("y", 1)]
        first = tft.decide(peers, 0).optimistic
        remaining = [p for p in peers if p.key != first]
        second = tft.decide(remaining, 1).optimistic
        assert second is not None
        assert second != first

    def test_struck_peers_excluded_when_possible(self):
        tft = strategy(upload_slots=0, optimistic_ticks=1)
        peers = [snap("bad", strikes=1), snap("good")]
        assert {tft.decide(peers, t).optimistic for t in range(20)} == {"good"}
        assert tft.decide([snap("bad", strikes=1)], 20).optimistic == "bad"

    def test_new_peers_weighted(self):
        """Test recently connected peers win the optimistic slot more often."""
        tft = strategy(upload_slots=0, optimistic_ticks=1, new_peer_window=60, new_peer_weight=3, rng=random.Random(11))
        peers = [snap("old", connected_at=0.0), snap("new", connected_at=990.0)]
        counts = Counter(tft.decide(peers, t).optimistic for t in range(2000))
        assert counts["new"] > 2 * counts["old"]

    def test_from_config(self, fast_config):
        tft = TitForTatStrategy.from_config(fast_config, rng=random.Random(0))
        assert tft.upload_slots == fast_config.choking.upload_slots
        assert tft.optimistic_ticks == fast_config.choking.optimistic_unchoke_ticks


class FakePeer:
    """Just enough of a PeerConnection for the scheduler."""

    def __init__(self, key: str, rate: float, interested: bool = True):
        self.key = key
        self.peer_interested = interested
        self.am_choking = True
        self.is_established = True
        self.stats = type("Stats", (), {"download_rate": rate, "upload_rate": 0.0, "connected_at": 0.0})()
        self.calls: list[str] = []

    def choke(self):
        self.am_choking = True
        self.calls.append("choke")

    def unchoke(self):
        self.am_choking = False
        self.calls.append("unchoke")


class TestChokeScheduler:
    """Test cases for ChokeScheduler."""

    def test_tick_applies_decision(self):
        peers = [FakePeer("a", 10), FakePeer("b", 50), FakePeer("c", 5), FakePeer("d", 30)]
        scheduler = ChokeScheduler(strategy(upload_slots=2), lambda: peers)

        decision = scheduler.tick()

        assert isinstance(decision, ChokeDecision)
        assert scheduler.ticks == 1
        unchoked = {p.key for p in peers if not p.am_choking}
        assert unchoked == decision.unchoked
        assert {"b", "d"} <= unchoked
        assert len(unchoked) == 3

    def test_tick_skips_unestablished_and_passes_strikes(self):
        peers = [FakePeer("a", 10), FakePeer("b", 20)]
        peers[1].is_established = False
        scheduler = ChokeScheduler(strategy(upload_slots=1), lambda: peers, strikes=lambda key: 4)

        assert scheduler.snapshot(peers[0]).strikes == 4
        scheduler.tick()
        assert peers[0].calls == ["unchoke"]
        assert peers[1].calls == []

    @pytest.mark.asyncio
    async def test_start_stop(self):
        peers = [FakePeer("a", 1)]
        scheduler = ChokeScheduler(strategy(), lambda: peers, interval=0.01)
        scheduler.start()
        for _ in range(100):
            if scheduler.ticks >= 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        assert scheduler.ticks >= 2
        assert not peers[0].am_choking
