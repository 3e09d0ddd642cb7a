"""
clock.py — Injectable time source.

Rate limiters, the price cache, and the registration / grace-window checks
read time through a Clock so tests can move time forward without sleeping.
"""
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Seconds since the epoch."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


def now_ms(clock: Clock) -> int:
    """Epoch milliseconds: the unit used by registration and nullifier rows."""
    return int(clock.now() * 1000)
