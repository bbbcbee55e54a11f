"""Process-wide resilience state.

One ``ResilienceContext`` owns the event bus, the breaker registry and the
rate limiter. It is built at startup, started and stopped by the app
lifespan, and a fresh one can be built per test.
"""

from typing import Optional

import httpx

from asdf_gateway.app.core.audit import AuditSink, log_audit
from asdf_gateway.app.core.clock import Clock, system_clock
from asdf_gateway.app.core.config import Settings
from asdf_gateway.app.core.logging import get_logger
from asdf_gateway.app.middleware.rate_limit import RateLimitConfig, RateLimiter
from asdf_gateway.app.services.circuit_breaker import CircuitBreakerRegistry
from asdf_gateway.app.services.event_bus import EventBus, EventBusConfig
from asdf_gateway.app.services.guarded_call import GuardedCaller

logger = get_logger(__name__)


class ResilienceContext:
    def __init__(
        self,
        settings: Settings,
        event_bus: EventBus,
        registry: CircuitBreakerRegistry,
        rate_limiter: RateLimiter,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.event_bus = event_bus
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.http_client = http_client
        self.guarded = GuardedCaller(rate_limiter, registry)
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "ResilienceContext":
        """Wire every component from ``settings``."""
        settings = settings or Settings()
        audit = audit or log_audit
        clock = clock or system_clock

        event_bus = EventBus(EventBusConfig.from_settings(settings), audit=audit, clock=clock)
        registry = CircuitBreakerRegistry(
            settings,
            audit=audit,
            event_bus=event_bus,
            clock=clock,
            http_client=http_client,
        )
        rate_limiter = RateLimiter(
            RateLimitConfig.from_settings(settings),
            audit=audit,
            event_bus=event_bus,
            clock=clock,
        )

        if settings.register_default_circuits:
            registry.register_default_circuits()

        return cls(settings, event_bus, registry, rate_limiter, http_client)

    def attach_http_client(self, http_client: Optional[httpx.AsyncClient]) -> None:
        self.http_client = http_client
        self.registry.set_http_client(http_client)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start background sweeps."""
        if self._started:
            return
        await self.registry.start()
        await self.rate_limiter.start()
        self._started = True
        logger.info("Resilience context started")

    async def stop(self) -> None:
        """Stop sweeps and deliver outstanding notifications."""
        if not self._started:
            return
        await self.rate_limiter.stop()
        await self.registry.stop()
        await self.event_bus.drain()
        self._started = False
        logger.info("Resilience context stopped")
