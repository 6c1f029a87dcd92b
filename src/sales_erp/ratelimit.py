"""Fixed window request counting for the HTTP API.

Every client address gets ``requests`` calls per window. All counters reset
together when the window rolls over, so memory stays bounded by the number
of addresses seen within a single window.
"""

from __future__ import annotations

import time
from typing import Callable, Dict

from . import log
from .settings import RateLimitSettings


class FixedWindowRateLimiter:
    """Count requests per key and refuse those over budget."""

    def __init__(self, requests: int, window_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if requests <= 0 or window_seconds <= 0:
            raise ValueError("requests and window_seconds must be positive")
        self.requests = requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._window = self._current_window()
        self._counts: Dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> "FixedWindowRateLimiter":
        return cls(settings.requests, settings.window_seconds)

    def _current_window(self) -> int:
        return int(self._clock() // self.window_seconds)

    def allow(self, key: str) -> bool:
        """Record one request for ``key`` and report whether it is within budget."""

        window = self._current_window()
        if window != self._window:
            self._window = window
            self._counts.clear()
        count = self._counts.get(key, 0) + 1
        self._counts[key] = count
        if count > self.requests:
            if count == self.requests + 1:
                log.warning("Rate limit reached for client %s", key)
            return False
        return True

