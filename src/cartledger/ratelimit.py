from __future__ import annotations

import time
from typing import Callable, Optional

from cartledger.cancellation import CancellationToken


class RateLimiter:
    """Minimum-interval pacing for ledger submissions.

    ``wait()`` blocks until ``last + 1/rate`` seconds have passed since the
    previous ``wait()`` returned. The first call never blocks. ``clock`` and
    ``sleep`` are injectable so tests never sleep for real.
    """

    def __init__(
        self,
        rate: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be > 0, got {rate}")
        self.rate = float(rate)
        self.min_interval_s = 1.0 / self.rate
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None

    def wait(self, cancel: Optional[CancellationToken] = None) -> float:
        """Returns the number of seconds slept."""
        if cancel is not None:
            cancel.raise_if_cancelled("rate_limit")

        slept = 0.0
        now = self._clock()
        if self._last is not None:
            delay = (self._last + self.min_interval_s) - now
            if delay > 0:
                self._sleep(delay)
                slept = delay
                now = self._clock()

        self._last = now
        return slept

    def reset(self) -> None:
        self._last = None
