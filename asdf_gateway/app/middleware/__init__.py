"""Middleware package for the gateway."""

from asdf_gateway.app.middleware.auth import require_admin
from asdf_gateway.app.middleware.rate_limit import RateLimitMiddleware
from asdf_gateway.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_admin",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
