"""Time sources for breakers, limiters and the event bus.

Wall-clock reads go through a ``Clock`` so tests can drive time explicitly
with ``ManualClock`` instead of sleeping.
"""

import time


class Clock:
    """Wall-clock and monotonic time source."""

    def now(self) -> float:
        """Current wall-clock time in epoch seconds."""
        raise NotImplementedError

    def monotonic(self) -> float:
        """Monotonic time in seconds, used for measuring durations."""
        raise NotImplementedError


class SystemClock(Clock):
    """Clock backed by the ``time`` module."""

    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to.

    Usage:
        clock = ManualClock(1_700_000_000.0)
        limiter = RateLimiter(clock=clock)
        clock.advance(61)
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = float(start)
        self._monotonic = 0.0

    def now(self) -> float:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("Cannot move a clock backwards")
        self._now += seconds
        self._monotonic += seconds

    def set(self, timestamp: float) -> None:
        if timestamp < self._now:
            raise ValueError("Cannot move a clock backwards")
        self.advance(timestamp - self._now)


system_clock = SystemClock()
