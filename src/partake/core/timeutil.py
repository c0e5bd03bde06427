import time

def now() -> float:
    """Monotonic seconds, for windows and timeouts."""
    return time.monotonic()
