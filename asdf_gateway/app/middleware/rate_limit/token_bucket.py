"""Token buckets for per-action cost limiting."""

import math
from collections import OrderedDict

from asdf_gateway.app.middleware.rate_limit.models import (
    TOKEN_REFILL_FRACTION,
    TierLimits,
    TokenBucket,
    TokenBucketResult,
)


class TokenBucketStore:
    """LRU-bounded token buckets keyed by identifier.

    Refill is lazy and whole-second: ``floor(elapsed) * refill_rate`` tokens
    are added on access, where the refill rate is a fifth of the tier's
    per-second limit.
    """

    def __init__(self, max_entries: int = 100_000):
        self._max_entries = max_entries
        self._buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._buckets)

    def _enforce_lru_limit(self) -> None:
        if len(self._buckets) >= self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(self._buckets))):
                self._buckets.popitem(last=False)

    def check(self, identifier: str, limits: TierLimits, cost: float, now: float) -> TokenBucketResult:
        bucket = self._buckets.get(identifier)
        if bucket is None:
            self._enforce_lru_limit()
            bucket = TokenBucket(
                tokens=float(limits.burst_size),
                max_tokens=float(limits.burst_size),
                last_refill=now,
                last_access=now,
            )
            self._buckets[identifier] = bucket
        else:
            self._buckets.move_to_end(identifier)
        bucket.last_access = now

        refill_rate = limits.per_second * TOKEN_REFILL_FRACTION
        tokens_to_add = math.floor(now - bucket.last_refill) * refill_rate
        if tokens_to_add > 0:
            bucket.tokens = min(bucket.max_tokens, bucket.tokens + tokens_to_add)
            bucket.last_refill = now

        if bucket.tokens >= cost:
            bucket.tokens -= cost
            return TokenBucketResult(allowed=True, tokens=bucket.tokens)

        tokens_needed = cost - bucket.tokens
        return TokenBucketResult(
            allowed=False,
            tokens=bucket.tokens,
            refill_in=math.ceil(tokens_needed / refill_rate),
        )

    def evict_idle(self, cutoff: float) -> int:
        stale = [key for key, bucket in self._buckets.items() if bucket.last_access < cutoff]
        for key in stale:
            del self._buckets[key]
        return len(stale)
