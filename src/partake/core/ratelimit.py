from __future__ import annotations
from typing import Callable, Dict, List

from .constants import RATE_WINDOW_S
from .timeutil import now

class RateLimiter:
    """Per-key sliding window: at most `limit` actions in any `window_s` span."""

    def __init__(self, limit: int, window_s: float = RATE_WINDOW_S, clock: Callable[[], float] = now):
        self.limit = limit
        self.window_s = window_s
        self.clock = clock
        self.requests: Dict[str, List[float]] = {}

    def is_allowed(self, key: str) -> bool:
        t = self.clock()
        recent = [ts for ts in self.requests.get(key, []) if t - ts < self.window_s]

        if len(recent) >= self.limit:
            self.requests[key] = recent
            return False

        recent.append(t)
        self.requests[key] = recent
        return True

    def forget(self, key: str):
        self.requests.pop(key, None)
