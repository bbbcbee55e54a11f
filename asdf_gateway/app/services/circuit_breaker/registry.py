"""Named circuit breaker registry.

One breaker per external dependency. Lookups are idempotent: the first
``get_circuit(name)`` creates and wires the breaker, later calls return the
same instance and ignore any new configuration.
"""

import functools
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx

from asdf_gateway.app.core.audit import AuditSink, log_audit
from asdf_gateway.app.core.clock import Clock, system_clock
from asdf_gateway.app.core.config import Settings
from asdf_gateway.app.core.logging import get_log_context, get_logger
from asdf_gateway.app.core.periodic import PeriodicTask
from asdf_gateway.app.exceptions import ConfigurationError
from asdf_gateway.app.services.circuit_breaker.breaker import CircuitBreaker, Operation
from asdf_gateway.app.services.circuit_breaker.http import HttpCircuit
from asdf_gateway.app.services.circuit_breaker.models import (
    CircuitBreakerConfig,
    CircuitState,
    GlobalCircuitStats,
    percent,
)
from asdf_gateway.app.services.event_bus import EventBus

logger = get_logger(__name__)

ConfigLike = Union[CircuitBreakerConfig, Mapping[str, Any], None]


def degraded_service_fallback(error: Exception, *args: Any, **kwargs: Any) -> dict:
    """Fallback payload for read-mostly dependencies."""
    return {"error": "Service temporarily unavailable", "fallback": True}


# name -> overrides on top of the settings defaults
DEFAULT_CIRCUITS: Dict[str, Dict[str, Any]] = {
    "helius": {
        "failure_threshold": 3,
        "success_threshold": 2,
        "open_duration": 30.0,
        "call_timeout": 15.0,
        "fallback": degraded_service_fallback,
    },
    "solana-rpc": {
        "failure_threshold": 5,
        "success_threshold": 3,
        "open_duration": 60.0,
        "call_timeout": 30.0,
    },
    "external-api": {
        "failure_threshold": 5,
        "success_threshold": 2,
        "open_duration": 30.0,
        "call_timeout": 10.0,
        "max_concurrent": 20,
    },
}


class CircuitBreakerRegistry:
    """Creates, looks up and manages named breakers.

    Usage:
        registry = CircuitBreakerRegistry(event_bus=bus)
        breaker = registry.get_circuit("helius", {"failure_threshold": 3})
        fetch_account = registry.wrap("helius", fetch_account)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        audit: Optional[AuditSink] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or Settings()
        self._audit = audit or log_audit
        self._event_bus = event_bus
        self._clock = clock or system_clock
        self._http_client = http_client

        self._circuits: Dict[str, CircuitBreaker] = {}
        self.global_stats = GlobalCircuitStats()

        self._prune_task = PeriodicTask(
            "circuit-history-prune",
            self._settings.circuit_prune_interval_seconds,
            self.prune_history,
        )

    def __contains__(self, name: str) -> bool:
        return name in self._circuits

    def __len__(self) -> int:
        return len(self._circuits)

    def _build_config(self, config: ConfigLike) -> CircuitBreakerConfig:
        if isinstance(config, CircuitBreakerConfig):
            return config
        return CircuitBreakerConfig.from_settings(self._settings, **dict(config or {}))

    def get_circuit(self, name: str, config: ConfigLike = None) -> CircuitBreaker:
        """Get the breaker for ``name``, creating it on first use.

        Args:
            name: Dependency name
            config: ``CircuitBreakerConfig`` or a mapping of overrides on top
                of the settings defaults. Ignored if the breaker exists.
        """
        breaker = self._circuits.get(name)
        if breaker is not None:
            return breaker

        breaker = CircuitBreaker(
            name,
            self._build_config(config),
            audit=self._audit,
            event_bus=self._event_bus,
            clock=self._clock,
            global_stats=self.global_stats,
        )
        self._circuits[name] = breaker
        logger.info(f"Circuit breaker created: {name}", extra=get_log_context(circuit=name))
        return breaker

    async def execute(self, name: str, fn: Operation, *args: Any, **kwargs: Any) -> Any:
        """Run ``fn`` through the named breaker (created with defaults if missing)."""
        return await self.get_circuit(name).execute(fn, *args, **kwargs)

    def wrap(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        config: ConfigLike = None,
    ) -> Callable[..., Awaitable[Any]]:
        """Return a breaker-protected drop-in replacement for ``fn``."""
        breaker = self.get_circuit(name, config)

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await breaker.execute(fn, *args, **kwargs)

        return wrapper

    def set_http_client(self, http_client: Optional[httpx.AsyncClient]) -> None:
        """Share ``http_client`` with HTTP circuits created from now on."""
        self._http_client = http_client

    def create_http_circuit(
        self,
        name: str,
        config: ConfigLike = None,
        base_url: str = "",
    ) -> HttpCircuit:
        return HttpCircuit(self.get_circuit(name, config), self._http_client, base_url)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def get_all_circuits(self) -> Dict[str, dict]:
        return {name: breaker.get_status() for name, breaker in list(self._circuits.items())}

    def get_circuit_status(self, name: str) -> Optional[dict]:
        breaker = self._circuits.get(name)
        return breaker.get_status() if breaker else None

    def force_circuit_state(self, name: str, state: Union[CircuitState, str]) -> bool:
        """Force a breaker open or closed.

        Returns:
            False if no breaker has that name

        Raises:
            ConfigurationError: If ``state`` is not ``open`` or ``closed``
        """
        try:
            target = CircuitState(state)
        except ValueError:
            raise ConfigurationError(f"Unknown circuit state: {state}") from None
        if target is CircuitState.HALF_OPEN:
            raise ConfigurationError("Circuits can only be forced open or closed")

        breaker = self._circuits.get(name)
        if breaker is None:
            return False

        if target is CircuitState.OPEN:
            breaker.force_open()
        else:
            breaker.force_close()
        self._audit("circuit_forced", {"circuit": name, "state": target.value})
        return True

    def reset_circuit(self, name: str) -> bool:
        breaker = self._circuits.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def remove_circuit(self, name: str) -> bool:
        if self._circuits.pop(name, None) is None:
            return False
        logger.info(f"Circuit breaker removed: {name}", extra=get_log_context(circuit=name))
        return True

    def get_stats(self) -> dict:
        by_state = {state.value: 0 for state in CircuitState}
        for breaker in list(self._circuits.values()):
            by_state[breaker.state.value] += 1

        stats = self.global_stats.to_dict()
        stats.update({
            "total_circuits": len(self._circuits),
            "by_state": by_state,
            "failure_rate": percent(self.global_stats.total_failures, self.global_stats.total_calls),
        })
        return stats

    def register_default_circuits(self) -> List[str]:
        """Create the predefined dependency breakers."""
        for name, overrides in DEFAULT_CIRCUITS.items():
            self.get_circuit(name, overrides)
        logger.info(f"Registered default circuits: {', '.join(DEFAULT_CIRCUITS)}")
        return list(DEFAULT_CIRCUITS)

    def prune_history(self) -> int:
        """Prune stale call history on every breaker."""
        removed = sum(breaker.prune_history() for breaker in list(self._circuits.values()))
        if removed:
            logger.debug(f"Pruned {removed} circuit call records")
        return removed

    async def start(self) -> None:
        await self._prune_task.start()

    async def stop(self) -> None:
        await self._prune_task.stop()
