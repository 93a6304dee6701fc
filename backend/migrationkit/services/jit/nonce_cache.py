"""
Bounded, time-windowed cache of nonces already seen by the JIT endpoint.
"""

import time
from collections import OrderedDict
from typing import Callable


class NonceCache:
    """
    Remembers each nonce for ``window_seconds``.

    When more than ``max_size`` nonces are live the oldest are forgotten
    first, so memory stays bounded under load at the cost of a shorter
    effective window.
    """

    def __init__(self, window_seconds: float, max_size: int = 10000, clock: Callable[[], float] = time.monotonic):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = window_seconds
        self.max_size = max_size
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def _evict(self, now: float) -> None:
        while self._seen:
            nonce, expires_at = next(iter(self._seen.items()))
            if expires_at > now and len(self._seen) <= self.max_size:
                break
            self._seen.popitem(last=False)

    def check_and_add(self, nonce: str) -> bool:
        """True when the nonce is new (and is now recorded); False on replay."""
        now = self._clock()
        self._evict(now)
        expires_at = self._seen.get(nonce)
        if expires_at is not None and expires_at > now:
            return False
        self._seen[nonce] = now + self.window_seconds
        self._seen.move_to_end(nonce)
        self._evict(now)
        return True
