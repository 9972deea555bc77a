"""Periodic choke/unchoke rounds."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Callable

from peerwire.choke.strategy import ChokeDecision, ChokeStrategy, PeerSnapshot

if TYPE_CHECKING:
    from peerwire.peer.connection import PeerConnection

logger = logging.getLogger(__name__)


class ChokeScheduler:
    """Runs a :class:`ChokeStrategy` every ``interval`` seconds.

    Each round takes a snapshot of every established connection, asks the
    strategy for a decision, then applies it through the connections'
    ``choke``/``unchoke`` commands.
    """

    def __init__(
        self,
        strategy: ChokeStrategy,
        peers: Callable[[], Iterable[PeerConnection]],
        interval: float = 10.0,
        *,
        strikes: Callable[[str], int] = lambda key: 0,
        seeding: Callable[[], bool] = lambda: False,
    ):
        self.strategy = strategy
        self._peers = peers
        self._strikes = strikes
        self._seeding = seeding
        self.interval = interval
        self.ticks = 0
        self.last_decision: ChokeDecision | None = None
        self._task: asyncio.Task[None] | None = None

    def snapshot(self, conn: PeerConnection) -> PeerSnapshot:
        return PeerSnapshot(
            key=conn.key,
            download_rate=conn.stats.download_rate,
            upload_rate=conn.stats.upload_rate,
            interested=conn.peer_interested,
            connected_at=conn.stats.connected_at,
            am_choking=conn.am_choking,
            strikes=self._strikes(conn.key),
        )

    def tick(self) -> ChokeDecision:
        """Run one choking round."""
        conns = [c for c in self._peers() if c.is_established]
        snapshots = [self.snapshot(c) for c in conns]
        decision = self.strategy.decide(snapshots, self.ticks, seeding=self._seeding())
        self.ticks += 1

        unchoked = decision.unchoked
        for conn in conns:
            if conn.key in unchoked:
                conn.unchoke()
            else:
                conn.choke()
        self.last_decision = decision
        logger.debug(
            "Choke round %s: unchoked %s, optimistic %s",
            self.ticks,
            sorted(decision.unchoke),
            decision.optimistic,
        )
        return decision

    async def _loop(self) -> None:
        while True:
            try:
                self.tick()
            except Exception:
                logger.exception("Error in choking loop")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="choke-scheduler")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
