"""Circuit breaker with bulkhead isolation for outbound dependencies."""

from .breaker import CircuitBreaker
from .bulkhead import Bulkhead
from .http import HttpCircuit
from .models import (
    CallRecord,
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
    GlobalCircuitStats,
)
from .registry import DEFAULT_CIRCUITS, CircuitBreakerRegistry, degraded_service_fallback

__all__ = [
    "CircuitBreaker",
    "Bulkhead",
    "HttpCircuit",
    "CallRecord",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitStats",
    "GlobalCircuitStats",
    "CircuitBreakerRegistry",
    "DEFAULT_CIRCUITS",
    "degraded_service_fallback",
]
