"""In-memory rate limiter with tiers, endpoint overrides and ban escalation.

Two independent admission gates:
- ``check_limit``: sliding windows (second/minute/hour/day) per identifier
  and endpoint. Denials count as violations and escalate to bans.
- ``check_token_bucket``: per-identifier bucket for actions priced per call.

Both are synchronous and never raise for a rejection; they return a result
object carrying the rejection metadata.
"""

import math
from typing import Any, Dict, Optional

from pydantic import ValidationError

from asdf_gateway.app.core.audit import AuditSink, log_audit
from asdf_gateway.app.core.clock import Clock, system_clock
from asdf_gateway.app.core.logging import get_log_context, get_logger
from asdf_gateway.app.core.periodic import PeriodicTask
from asdf_gateway.app.exceptions import ConfigurationError
from asdf_gateway.app.middleware.rate_limit.ip import hash_identifier
from asdf_gateway.app.middleware.rate_limit.models import (
    WINDOW_LIMIT_FIELDS,
    BanStatus,
    EndpointLimits,
    RateLimitConfig,
    RateLimitResult,
    TierLimits,
    TokenBucketResult,
)
from asdf_gateway.app.middleware.rate_limit.sliding_window import SlidingWindowStore
from asdf_gateway.app.middleware.rate_limit.token_bucket import TokenBucketStore
from asdf_gateway.app.middleware.rate_limit.violations import ViolationOutcome, ViolationTracker
from asdf_gateway.app.services.circuit_breaker.models import percent
from asdf_gateway.app.services.event_bus import EventBus, EventType

logger = get_logger(__name__)


def build_key(identifier: str, endpoint: Optional[str] = None) -> str:
    return f"{identifier}:{endpoint}" if endpoint else identifier


class RateLimiter:
    """Usage:
        limiter = RateLimiter(RateLimitConfig(), event_bus=bus)
        result = limiter.check_limit(ip, "anonymous", "/api/burn")
        if not result.allowed:
            ...
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        audit: Optional[AuditSink] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or RateLimitConfig()
        self._audit = audit or log_audit
        self._event_bus = event_bus
        self._clock = clock or system_clock

        self._windows = SlidingWindowStore(self.config.max_entries)
        self._buckets = TokenBucketStore(self.config.max_entries)
        self._violations = ViolationTracker(self.config.ban)

        self._stats = {
            "allowed": 0,
            "denied": 0,
            "violations": 0,
            "temp_bans": 0,
            "perma_bans": 0,
        }

        self._cleanup_task = PeriodicTask(
            "rate-limit-cleanup",
            self.config.cleanup_interval,
            self.cleanup,
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def get_tier_limits(self, tier: Optional[str]) -> TierLimits:
        """Limits for ``tier``; unknown tiers fall back to the default tier."""
        return self.config.tiers.get(tier or "") or self.config.tiers[self.config.default_tier]

    def get_applicable_limits(self, tier: Optional[str], endpoint: Optional[str] = None) -> Dict[str, int]:
        """Window name -> threshold with endpoint overrides applied."""
        limits = self.get_tier_limits(tier).model_dump()
        if endpoint and endpoint in self.config.endpoint_limits:
            overrides = self.config.endpoint_limits[endpoint].model_dump(exclude_none=True)
            limits.update(overrides)
        return {window: limits[field] for window, field in WINDOW_LIMIT_FIELDS.items()}

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def check_limit(
        self,
        identifier: str,
        tier: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> RateLimitResult:
        """Sliding-window admission check for one request.

        Bans are checked first and short-circuit without touching windows.
        A denial records a violation, which may escalate to a ban.
        """
        now = self._clock.now()

        if self._violations.is_permanently_banned(identifier):
            self._stats["denied"] += 1
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_in=-1,
                retry_after=-1,
                banned=True,
                reason="permanent_ban",
            )

        record = self._violations.get(identifier)
        if record is not None and record.is_temp_banned(now):
            self._stats["denied"] += 1
            reset_in = record.ban_expires - now
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_in=reset_in,
                retry_after=math.ceil(reset_in),
                banned=True,
                reason="temporary_ban",
            )

        limits = self.get_applicable_limits(tier, endpoint)
        result = self._windows.check(build_key(identifier, endpoint), limits, now)

        if result.allowed:
            self._stats["allowed"] += 1
            return result

        self._stats["denied"] += 1
        self._stats["violations"] += 1
        self._notify(EventType.RATE_LIMIT_HIT, {
            "identifier": hash_identifier(identifier),
            "tier": tier,
            "endpoint": endpoint,
            "retry_after": result.retry_after,
        })
        self._apply_violation(identifier, now)
        return result

    def check_token_bucket(
        self,
        identifier: str,
        tier: Optional[str] = None,
        cost: float = 1,
    ) -> TokenBucketResult:
        """Token-bucket admission check, independent of the sliding windows."""
        if cost <= 0:
            raise ConfigurationError("Token cost must be positive")
        return self._buckets.check(identifier, self.get_tier_limits(tier), cost, self._clock.now())

    # ------------------------------------------------------------------
    # Violations and bans
    # ------------------------------------------------------------------

    def record_violation(self, identifier: str) -> ViolationOutcome:
        """Record a violation outside ``check_limit`` (e.g. abuse detection)."""
        return self._apply_violation(identifier, self._clock.now())

    def _apply_violation(self, identifier: str, now: float) -> ViolationOutcome:
        outcome = self._violations.record(identifier, now)
        hashed = hash_identifier(identifier)

        if outcome.temp_banned:
            self._stats["temp_bans"] += 1
            payload = {
                "identifier": hashed,
                "violations": outcome.record.count,
                "duration": self.config.ban.temp_duration,
            }
            self._audit("rate_limit_temp_ban", payload)
            logger.warning(
                f"Temporary ban after {outcome.record.count} violations",
                extra=get_log_context(identifier=hashed),
            )
            self._notify(EventType.RATE_LIMIT_TEMP_BAN, dict(payload, expires=outcome.record.ban_expires))

        if outcome.perma_banned:
            self._stats["perma_bans"] += 1
            payload = {"identifier": hashed, "violations": outcome.record.count}
            self._audit("rate_limit_perma_ban", payload)
            logger.warning(
                f"Permanent ban after {outcome.record.count} violations",
                extra=get_log_context(identifier=hashed),
            )
            self._notify(EventType.RATE_LIMIT_PERMA_BAN, payload)

        return outcome

    def clear_violations(self, identifier: str) -> bool:
        self._violations.clear(identifier)
        return True

    def is_banned(self, identifier: str) -> BanStatus:
        return self._violations.status(identifier, self._clock.now())

    def remove_ban(self, identifier: str) -> bool:
        """Lift a permanent ban. The violation record is cleared either way.

        Returns:
            True if the identifier was permanently banned
        """
        was_banned = self._violations.remove_ban(identifier)
        if was_banned:
            hashed = hash_identifier(identifier)
            self._audit("rate_limit_unban", {"identifier": hashed})
            logger.info("Permanent ban lifted", extra=get_log_context(identifier=hashed))
            self._notify(EventType.RATE_LIMIT_UNBAN, {"identifier": hashed})
        return was_banned

    def _notify(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish_nowait(event_type, data)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        total = self._stats["allowed"] + self._stats["denied"]
        stats = dict(self._stats)
        stats.update({
            "active_limiters": len(self._windows),
            "active_buckets": len(self._buckets),
            "active_violations": len(self._violations),
            "permanent_bans": len(self._violations.permanent_bans),
            "allow_rate": percent(self._stats["allowed"], total) if total else 100.0,
        })
        return stats

    def get_violation_details(self, identifier: str) -> Optional[dict]:
        record = self._violations.get(identifier)
        if record is None:
            return None
        return {
            "count": record.count,
            "last_violation": record.last_violation,
            "banned": record.banned,
            "ban_expires": record.ban_expires,
            "recent_violations": list(record.history)[-10:],
        }

    def get_banned_list(self) -> dict:
        """Currently banned identifiers, hashed."""
        now = self._clock.now()
        temporary = [
            {
                "hash": hash_identifier(identifier),
                "expires_in": record.ban_expires - now,
                "violations": record.count,
            }
            for identifier, record in self._violations.records.items()
            if record.is_temp_banned(now)
        ]
        permanent = [{"hash": hash_identifier(i)} for i in self._violations.permanent_bans]
        return {"temporary": temporary, "permanent": permanent}

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_tier_limits(self, tier: str, **limits: int) -> bool:
        """Merge new limits into an existing tier.

        Returns:
            False if the tier does not exist

        Raises:
            ConfigurationError: If a limit name or value is invalid
        """
        current = self.config.tiers.get(tier)
        if current is None:
            return False
        try:
            self.config.tiers[tier] = TierLimits(**{**current.model_dump(), **limits})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid limits for tier {tier}: {e}") from e
        self._audit("rate_limit_tier_updated", {"tier": tier, "limits": limits})
        return True

    def update_endpoint_limits(self, endpoint: str, **limits: int) -> None:
        """Create or merge per-endpoint overrides."""
        current = self.config.endpoint_limits.get(endpoint)
        base = current.model_dump(exclude_none=True) if current else {}
        try:
            self.config.endpoint_limits[endpoint] = EndpointLimits(**{**base, **limits})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid limits for endpoint {endpoint}: {e}") from e
        self._audit("rate_limit_endpoint_updated", {"endpoint": endpoint, "limits": limits})

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> dict:
        """Evict idle entries, decay violations and clear expired temp bans."""
        now = self._clock.now()
        cutoff = now - self.config.entry_ttl

        removed = {
            "limiters": self._windows.evict_idle(cutoff),
            "buckets": self._buckets.evict_idle(cutoff),
            "violations": self._violations.decay(now),
        }
        if any(removed.values()):
            logger.debug(f"Rate limit cleanup removed {removed}")
        return removed

    async def start(self) -> None:
        await self._cleanup_task.start()

    async def stop(self) -> None:
        await self._cleanup_task.stop()
