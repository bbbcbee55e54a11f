"""Rate-limited, breaker-protected outbound calls.

Admission runs first: a caller over its rate limit never reaches the
breaker, and its rejection does not count against the dependency.
"""

from typing import Any, Optional

from asdf_gateway.app.exceptions import RateLimitExceededError
from asdf_gateway.app.middleware.rate_limit import RateLimiter
from asdf_gateway.app.services.circuit_breaker import CircuitBreakerRegistry
from asdf_gateway.app.services.circuit_breaker.breaker import Operation


class GuardedCaller:
    """Usage:
        caller = GuardedCaller(limiter, registry)
        data = await caller.call("helius", fetch_account, address,
                                 identifier=wallet, tier="premium")
    """

    def __init__(self, limiter: RateLimiter, registry: CircuitBreakerRegistry):
        self.limiter = limiter
        self.registry = registry

    async def call(
        self,
        circuit: str,
        fn: Operation,
        *args: Any,
        identifier: str,
        tier: Optional[str] = None,
        endpoint: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        """Check the caller's rate limit, then run ``fn`` through ``circuit``.

        Raises:
            RateLimitExceededError: If the identifier is limited or banned
            CircuitOpenError, BulkheadRejectedError, CallTimeoutError: From
                the breaker when no fallback is configured
        """
        result = self.limiter.check_limit(identifier, tier, endpoint)
        if not result.allowed:
            raise RateLimitExceededError(
                retry_after=result.retry_after,
                reason=result.reason or "rate_limit_exceeded",
                banned=result.banned,
            )
        return await self.registry.execute(circuit, fn, *args, **kwargs)
