"""Cooperative cancellation for upload and sync runs.

Pipelines call :meth:`CancellationToken.raise_if_cancelled` before every
network call and before every rate-limiter sleep, so a caller on another
thread (or a signal handler) can stop a run at the next suspension point.
Records already submitted stay on the ledger.
"""

from __future__ import annotations

import threading

from cartledger.errors import Cancelled


class CancellationToken:
    """Thread-safe cancellation flag checked at each suspension point."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            raise Cancelled("operation cancelled", details={"where": where} if where else None)

    def reset(self) -> None:
        """Only for tests or deliberate reuse."""
        self._event.clear()
