"""Sliding window counters over second/minute/hour/day windows."""

import math
from collections import OrderedDict
from typing import Dict, Optional

from asdf_gateway.app.middleware.rate_limit.models import (
    WINDOWS,
    LimiterEntry,
    RateLimitResult,
)


class SlidingWindowStore:
    """LRU-bounded map of limiter entries.

    Memory optimization:
    - OrderedDict gives LRU order; every check moves the key to the end
    - When ``max_entries`` is exceeded the oldest 20% are evicted
    - Idle entries are also removed by ``evict_idle`` from the cleanup sweep
    """

    def __init__(self, max_entries: int = 100_000):
        self._max_entries = max_entries
        self._entries: "OrderedDict[str, LimiterEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _enforce_lru_limit(self) -> None:
        if len(self._entries) >= self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(self._entries))):
                self._entries.popitem(last=False)

    def _get_or_create(self, key: str, now: float) -> LimiterEntry:
        entry = self._entries.get(key)
        if entry is None:
            self._enforce_lru_limit()
            entry = LimiterEntry(last_access=now)
            self._entries[key] = entry
        else:
            self._entries.move_to_end(key)
        return entry

    @staticmethod
    def _prune(entry: LimiterEntry, now: float) -> None:
        for name, duration in WINDOWS.items():
            timestamps = entry.windows[name]
            cutoff = now - duration
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()

    def check(self, key: str, limits: Dict[str, int], now: float) -> RateLimitResult:
        """Admit and record a request, or report the most restrictive window.

        Args:
            key: Limiter key
            limits: Window name -> threshold
            now: Current time in epoch seconds
        """
        entry = self._get_or_create(key, now)
        self._prune(entry, now)

        remaining: Optional[int] = None
        reset_in = 0.0
        blocked = False

        for name, duration in WINDOWS.items():
            limit = limits.get(name)
            if not limit:
                continue

            timestamps = entry.windows[name]
            count = len(timestamps)

            if count >= limit:
                blocked = True
                window_reset = timestamps[0] + duration - now if timestamps else duration
                # Longest constraint wins
                reset_in = max(reset_in, window_reset)
            else:
                left = limit - count - 1
                remaining = left if remaining is None else min(remaining, left)

        if blocked:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_in=reset_in,
                retry_after=math.ceil(reset_in),
                reason="rate_limit_exceeded",
            )

        for timestamps in entry.windows.values():
            timestamps.append(now)
        entry.last_access = now

        return RateLimitResult(allowed=True, remaining=max(0, remaining or 0))

    def evict_idle(self, cutoff: float) -> int:
        """Remove entries not accessed since ``cutoff``."""
        stale = [key for key, entry in self._entries.items() if entry.last_access < cutoff]
        for key in stale:
            del self._entries[key]
        return len(stale)
