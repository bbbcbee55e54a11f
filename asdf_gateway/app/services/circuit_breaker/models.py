"""Circuit breaker data models."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from asdf_gateway.app.core.config import Settings


class CircuitState(str, Enum):
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, rejecting calls
    HALF_OPEN = "half_open"  # Testing if the dependency recovered


Fallback = Callable[..., Any]


class CircuitBreakerConfig(BaseModel):
    """Per-breaker configuration. Durations are in seconds.

    Unknown fields are rejected so a typo in a breaker definition fails at
    startup instead of silently using a default.
    """
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=3, ge=1)
    open_duration: float = Field(default=30.0, gt=0)
    call_timeout: float = Field(default=10.0, gt=0)
    max_call_timeout: float = Field(default=60.0, gt=0)

    # Bulkhead
    max_concurrent: int = Field(default=10, ge=1)
    max_queue_depth: int = Field(default=50, ge=0)

    # Stats
    stats_window: float = Field(default=60.0, gt=0)
    stats_retention: float = Field(default=3600.0, gt=0)
    history_max_entries: int = Field(default=1000, ge=1)

    # Called as fallback(error, *args, **kwargs); may be sync or async
    fallback: Optional[Fallback] = None

    @model_validator(mode="after")
    def check_retention(self) -> "CircuitBreakerConfig":
        if self.stats_retention < self.stats_window:
            raise ValueError("stats_retention must cover stats_window")
        return self

    @property
    def effective_call_timeout(self) -> float:
        return min(self.call_timeout, self.max_call_timeout)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "CircuitBreakerConfig":
        values = {
            "failure_threshold": settings.circuit_failure_threshold,
            "success_threshold": settings.circuit_success_threshold,
            "open_duration": settings.circuit_open_duration_seconds,
            "call_timeout": settings.circuit_call_timeout_seconds,
            "max_call_timeout": settings.circuit_max_call_timeout_seconds,
            "max_concurrent": settings.circuit_max_concurrent,
            "max_queue_depth": settings.circuit_max_queue_depth,
            "stats_window": settings.circuit_stats_window_seconds,
            "stats_retention": settings.circuit_stats_retention_seconds,
            "history_max_entries": settings.circuit_history_max_entries,
        }
        values.update(overrides)
        return cls(**values)

    def public_dict(self) -> dict:
        """Configuration without the fallback callable."""
        return self.model_dump(exclude={"fallback"})


@dataclass
class CallRecord:
    """One completed call, kept for derived statistics only."""
    timestamp: float
    success: bool
    duration_ms: float
    error: Optional[str] = None


@dataclass
class CircuitStats:
    total_calls: int = 0
    failures: int = 0
    successes: int = 0
    rejections: int = 0
    timeouts: int = 0
    fallbacks: int = 0
    avg_response_time_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "failures": self.failures,
            "successes": self.successes,
            "rejections": self.rejections,
            "timeouts": self.timeouts,
            "fallbacks": self.fallbacks,
            "avg_response_time_ms": self.avg_response_time_ms,
        }


@dataclass
class GlobalCircuitStats:
    """Totals shared by every breaker of a registry."""
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    circuit_opens: int = 0
    circuit_closes: int = 0

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "circuit_opens": self.circuit_opens,
            "circuit_closes": self.circuit_closes,
        }


def percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole > 0 else 0.0

