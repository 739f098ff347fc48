"""
Duplicate/noise filter for final recognition results.
"""

import time
from typing import Callable, Optional


class RecognitionGate:
    """
    Rejects finals that repeat the last accepted text, or are very short,
    within a time window of the last accepted final.

    Args:
        window_ms: Suppression window after an accepted result
        min_length: Results this long or shorter are treated as noise inside the window
        clock: Monotonic clock in seconds
    """

    def __init__(
        self,
        window_ms: int = 2500,
        min_length: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_ms = window_ms
        self.min_length = min_length
        self._clock = clock
        self.last_text = ""
        self.last_at: Optional[float] = None

    def _elapsed_ms(self, now: float) -> float:
        if self.last_at is None:
            return float("inf")
        return (now - self.last_at) * 1000

    def is_duplicate(self, text: str, now: Optional[float] = None) -> bool:
        """Check a result against the gate without recording it."""
        now = self._clock() if now is None else now
        too_soon = self._elapsed_ms(now) < self.window_ms
        if not too_soon:
            return False
        return text == self.last_text or len(text) <= self.min_length

    def accept(self, text: str, now: Optional[float] = None) -> bool:
        """Record and return True if ``text`` should go downstream."""
        now = self._clock() if now is None else now
        if self.is_duplicate(text, now):
            return False
        self.last_text = text
        self.last_at = now
        return True
