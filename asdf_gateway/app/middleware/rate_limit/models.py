"""Rate limiting data models.

Configuration models are pydantic (unknown fields rejected); runtime state
and results are plain dataclasses. Durations are in seconds.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from asdf_gateway.app.core.config import Settings

# Window name -> duration in seconds
WINDOWS: Dict[str, float] = {
    "second": 1.0,
    "minute": 60.0,
    "hour": 60.0 * 60,
    "day": 24 * 60.0 * 60,
}

# Tier field holding the threshold of each window
WINDOW_LIMIT_FIELDS: Dict[str, str] = {
    "second": "per_second",
    "minute": "per_minute",
    "hour": "per_hour",
    "day": "per_day",
}

# Token bucket refill rate as a fraction of the per-second limit
TOKEN_REFILL_FRACTION = 1 / 5


class TierLimits(BaseModel):
    model_config = ConfigDict(extra="forbid")

    per_second: int = Field(ge=1)
    per_minute: int = Field(ge=1)
    per_hour: int = Field(ge=1)
    per_day: int = Field(ge=1)
    burst_size: int = Field(ge=1)


class EndpointLimits(BaseModel):
    """Per-endpoint overrides layered on top of the tier limits."""
    model_config = ConfigDict(extra="forbid")

    per_second: Optional[int] = Field(default=None, ge=1)
    per_minute: Optional[int] = Field(default=None, ge=1)
    per_hour: Optional[int] = Field(default=None, ge=1)
    per_day: Optional[int] = Field(default=None, ge=1)


class BanPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    threshold: int = Field(default=10, ge=1)          # Violations before temp ban
    temp_duration: float = Field(default=300.0, gt=0)
    perma_threshold: int = Field(default=50, ge=1)    # Violations before permanent ban
    decay_per_hour: float = Field(default=1.0, ge=0)
    history_size: int = Field(default=100, ge=1)


DEFAULT_TIERS: Dict[str, TierLimits] = {
    "anonymous": TierLimits(per_second=5, per_minute=60, per_hour=500, per_day=5000, burst_size=10),
    "authenticated": TierLimits(per_second=13, per_minute=144, per_hour=1000, per_day=10000, burst_size=21),
    "premium": TierLimits(per_second=34, per_minute=377, per_hour=3000, per_day=30000, burst_size=55),
    "admin": TierLimits(per_second=89, per_minute=987, per_hour=10000, per_day=100000, burst_size=144),
}

DEFAULT_ENDPOINT_LIMITS: Dict[str, EndpointLimits] = {
    "/api/auth": EndpointLimits(per_minute=10, per_hour=50),
    "/api/burn": EndpointLimits(per_minute=5, per_hour=30),
    "/api/purchase": EndpointLimits(per_minute=10, per_hour=100),
    "/api/webhook": EndpointLimits(per_minute=100, per_hour=1000),
}


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tiers: Dict[str, TierLimits] = Field(default_factory=lambda: dict(DEFAULT_TIERS))
    endpoint_limits: Dict[str, EndpointLimits] = Field(
        default_factory=lambda: dict(DEFAULT_ENDPOINT_LIMITS)
    )
    default_tier: str = "anonymous"
    ban: BanPolicy = Field(default_factory=BanPolicy)
    cleanup_interval: float = Field(default=60.0, gt=0)
    entry_ttl: float = Field(default=24 * 60.0 * 60, gt=0)
    max_entries: int = Field(default=100_000, ge=1)

    @model_validator(mode="after")
    def check_default_tier(self) -> "RateLimitConfig":
        if self.default_tier not in self.tiers:
            raise ValueError(f"default_tier '{self.default_tier}' is not a configured tier")
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitConfig":
        return cls(
            ban=BanPolicy(
                threshold=settings.ban_threshold,
                temp_duration=settings.ban_temp_duration_seconds,
                perma_threshold=settings.ban_perma_threshold,
                decay_per_hour=settings.ban_decay_per_hour,
                history_size=settings.ban_history_size,
            ),
            cleanup_interval=settings.rate_limit_cleanup_interval_seconds,
            entry_ttl=settings.rate_limit_entry_ttl_seconds,
            max_entries=settings.rate_limit_max_entries,
        )


@dataclass
class RateLimitResult:
    """Result of a sliding-window check.

    ``retry_after`` is whole seconds; ``-1`` for a permanent ban.
    ``reason`` is None when allowed, else ``rate_limit_exceeded``,
    ``temporary_ban`` or ``permanent_ban``.
    """
    allowed: bool
    remaining: int
    reset_in: float = 0.0
    retry_after: int = 0
    banned: bool = False
    reason: Optional[str] = None


@dataclass
class TokenBucketResult:
    allowed: bool
    tokens: float
    refill_in: int = 0  # Seconds until enough tokens are available


@dataclass
class LimiterEntry:
    """Request timestamps per window for one identifier (or identifier+endpoint)."""
    last_access: float
    windows: Dict[str, Deque[float]] = field(
        default_factory=lambda: {name: deque() for name in WINDOWS}
    )


@dataclass
class TokenBucket:
    tokens: float
    max_tokens: float
    last_refill: float
    last_access: float


@dataclass
class ViolationRecord:
    count: int = 0
    last_violation: float = 0.0
    banned: bool = False
    ban_expires: float = 0.0
    history: Deque[float] = field(default_factory=deque)
    # Point up to which decay has already been applied
    decayed_at: float = 0.0

    def is_temp_banned(self, now: float) -> bool:
        return self.banned and now < self.ban_expires


@dataclass
class BanStatus:
    banned: bool
    permanent: bool = False
    expires_in: float = 0.0  # Seconds; -1 for permanent bans

    def to_dict(self) -> dict:
        return {"banned": self.banned, "permanent": self.permanent, "expires_in": self.expires_in}
