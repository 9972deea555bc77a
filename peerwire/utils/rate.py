"""Rolling transfer-rate estimation."""

from __future__ import annotations

import time
from collections import deque
from typing import Callable


class RateMeter:
    """Bytes-per-second over a sliding time window.

    Samples older than ``window`` seconds are discarded; the rate is the sum of
    the remaining samples divided by the window (or by the meter's age while
    it is younger than the window, so a fresh peer is not under-rated).
    """

    def __init__(self, window: float = 20.0, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._samples: deque[tuple[float, int]] = deque()
        self._window_bytes = 0
        self._started = clock()
        self.total = 0

    def add(self, nbytes: int) -> None:
        """Record ``nbytes`` transferred now."""
        now = self._clock()
        self._samples.append((now, nbytes))
        self._window_bytes += nbytes
        self.total += nbytes
        self._expire(now)

    def _expire(self, now: float) -> None:
        horizon = now - self.window
        while self._samples and self._samples[0][0] < horizon:
            _, nbytes = self._samples.popleft()
            self._window_bytes -= nbytes

    @property
    def rate(self) -> float:
        """Current rate in bytes per second."""
        now = self._clock()
        self._expire(now)
        span = min(self.window, max(now - self._started, 1.0))
        return self._window_bytes / span
