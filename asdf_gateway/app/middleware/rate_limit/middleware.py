"""Rate limiting middleware for the gateway."""

import inspect
import math
from typing import Awaitable, Callable, Optional, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from asdf_gateway.app.core.logging import get_log_context, get_logger
from asdf_gateway.app.exceptions import RateLimitExceededError
from asdf_gateway.app.middleware.rate_limit.ip import extract_ip, hash_identifier
from asdf_gateway.app.middleware.rate_limit.limiter import RateLimiter
from asdf_gateway.app.middleware.rate_limit.models import RateLimitResult

logger = get_logger(__name__)

TierResolver = Callable[[Request], Union[Optional[str], Awaitable[Optional[str]]]]
IdentifierResolver = Callable[[Request], str]
SkipPredicate = Callable[[Request], bool]
LimitedHandler = Callable[[Request, RateLimitResult], Union[Response, Awaitable[Response]]]


def _anonymous_tier(request: Request) -> str:
    return "anonymous"


def _never_skip(request: Request) -> bool:
    return False


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Enforce sliding-window limits per client and endpoint.

    Sets ``X-RateLimit-Remaining`` and ``X-RateLimit-Reset`` on every checked
    response and ``Retry-After`` on rejections. Rejected requests get a 429
    JSON body unless ``on_limited`` builds the response.

    Args:
        app: ASGI application
        limiter: Rate limiter to consult
        get_tier: Request -> tier name, sync or async
        get_identifier: Request -> client identifier (default: client IP)
        skip: Request -> True to bypass limiting
        on_limited: (request, result) -> custom rejection response
    """

    def __init__(
        self,
        app: ASGIApp,
        limiter: RateLimiter,
        get_tier: Optional[TierResolver] = None,
        get_identifier: Optional[IdentifierResolver] = None,
        skip: Optional[SkipPredicate] = None,
        on_limited: Optional[LimitedHandler] = None,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.get_tier = get_tier or _anonymous_tier
        self.get_identifier = get_identifier or extract_ip
        self.skip = skip or _never_skip
        self.on_limited = on_limited

    async def _resolve_tier(self, request: Request) -> Optional[str]:
        tier = self.get_tier(request)
        if inspect.isawaitable(tier):
            tier = await tier
        return tier

    def _apply_headers(self, response: Response, result: RateLimitResult) -> None:
        reset_at = math.ceil(self.limiter.clock.now()) + max(0, result.retry_after)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_at)
        if not result.allowed and result.retry_after >= 0:
            response.headers["Retry-After"] = str(result.retry_after)

    async def _limited_response(self, request: Request, result: RateLimitResult) -> Response:
        if self.on_limited is not None:
            response = self.on_limited(request, result)
            if inspect.isawaitable(response):
                response = await response
            return response

        error = RateLimitExceededError(
            retry_after=result.retry_after,
            reason=result.reason or "rate_limit_exceeded",
            banned=result.banned,
        )
        body = error.to_response()
        body.pop("reason")
        return JSONResponse(status_code=error.status_code, content=body)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if self.skip(request):
            return await call_next(request)

        identifier = self.get_identifier(request)
        tier = await self._resolve_tier(request)
        endpoint = request.url.path

        result = self.limiter.check_limit(identifier, tier, endpoint)

        if not result.allowed:
            logger.info(
                f"Request rate limited: {result.reason}",
                extra=get_log_context(
                    identifier=hash_identifier(identifier),
                    tier=tier,
                    endpoint=endpoint,
                    method=request.method,
                ),
            )
            response = await self._limited_response(request, result)
            self._apply_headers(response, result)
            return response

        response = await call_next(request)
        self._apply_headers(response, result)
        return response
