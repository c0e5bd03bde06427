from __future__ import annotations
from typing import Callable

from ..core.constants import MESSAGES_PER_MINUTE, RELAY_BYTES_PER_MINUTE, RATE_WINDOW_S
from ..core.timeutil import now

class ConnectionBudget:
    """Per-connection message and relay-byte allowance, reset lazily each window."""

    def __init__(
        self,
        messages_per_window: int = MESSAGES_PER_MINUTE,
        relay_bytes_per_window: int = RELAY_BYTES_PER_MINUTE,
        window_s: float = RATE_WINDOW_S,
        clock: Callable[[], float] = now,
    ):
        self.messages_per_window = messages_per_window
        self.relay_bytes_per_window = relay_bytes_per_window
        self.window_s = window_s
        self.clock = clock
        self.window_start = clock()
        self.message_count = 0
        self.relay_bytes = 0

    def _roll(self):
        t = self.clock()
        if t - self.window_start >= self.window_s:
            self.window_start = t
            self.message_count = 0
            self.relay_bytes = 0

    def allow_message(self) -> bool:
        self._roll()
        if self.message_count >= self.messages_per_window:
            return False
        self.message_count += 1
        return True

    def allow_relay(self, n: int) -> bool:
        self._roll()
        if self.relay_bytes + n > self.relay_bytes_per_window:
            return False
        self.relay_bytes += n
        return True
