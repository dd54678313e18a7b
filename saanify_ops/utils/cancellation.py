"""Cooperative cancellation and step deadlines."""

import threading
import time
from typing import Optional

from .errors import CancelledError


class CancellationToken:
    """Flag checked between steps; setting it never interrupts a running step."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(f"Operation cancelled: {self.reason}")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        return self._event.wait(seconds)


class Deadline:
    """Monotonic deadline for a single pipeline step."""

    def __init__(self, seconds: Optional[float]):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds if seconds else None

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def timeout(self, default: float) -> float:
        """Network timeout bounded by what is left of the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.1, min(default, remaining))
