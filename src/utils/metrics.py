"""
Latency helpers for the ingress budget and handler timing.
"""
import time
from typing import Optional


class Timer:
    """Simple timer for measuring operation latency."""

    def __init__(self):
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def start(self) -> "Timer":
        self._start = time.monotonic()
        return self

    def stop(self) -> int:
        """Stop timer and return elapsed milliseconds."""
        self._end = time.monotonic()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> int:
        if self._start is None:
            return 0
        end = self._end or time.monotonic()
        return int((end - self._start) * 1000)

    def remaining_seconds(self, budget_seconds: float) -> float:
        """Seconds left of `budget_seconds` since start (never negative)."""
        return max(budget_seconds - self.elapsed_ms / 1000.0, 0.0)
