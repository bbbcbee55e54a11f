"""Rate limiting: sliding windows, token buckets and ban escalation.

Exports:
- RateLimiter: in-memory limiter with tiers, endpoint overrides and bans
- RateLimitMiddleware: Starlette middleware applying the limiter per request
- extract_ip / normalize_ip / hash_identifier: client identification helpers
"""

from .ip import extract_ip, hash_identifier, normalize_ip
from .limiter import RateLimiter, build_key
from .middleware import RateLimitMiddleware
from .models import (
    DEFAULT_ENDPOINT_LIMITS,
    DEFAULT_TIERS,
    WINDOWS,
    BanPolicy,
    BanStatus,
    EndpointLimits,
    RateLimitConfig,
    RateLimitResult,
    TierLimits,
    TokenBucketResult,
)
from .violations import ViolationOutcome, ViolationTracker

__all__ = [
    "RateLimiter",
    "RateLimitMiddleware",
    "build_key",
    "extract_ip",
    "hash_identifier",
    "normalize_ip",
    "DEFAULT_ENDPOINT_LIMITS",
    "DEFAULT_TIERS",
    "WINDOWS",
    "BanPolicy",
    "BanStatus",
    "EndpointLimits",
    "RateLimitConfig",
    "RateLimitResult",
    "TierLimits",
    "TokenBucketResult",
    "ViolationOutcome",
    "ViolationTracker",
]
