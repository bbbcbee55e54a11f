"""Request correlation IDs.

Breaker, limiter and error log lines carry the request ID so one request can
be followed through the gateway. A client-supplied ``X-Request-ID`` is reused
when it looks sane; otherwise a fresh one is minted.
"""

import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

MAX_REQUEST_ID_LENGTH = 128


def _is_usable(value: str) -> bool:
    return 0 < len(value) <= MAX_REQUEST_ID_LENGTH and value.isprintable()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Stores the ID on ``request.state.request_id`` and echoes it in the response."""

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(self.header_name, "").strip()
        request.state.request_id = incoming if _is_usable(incoming) else uuid.uuid4().hex

        response = await call_next(request)
        response.headers[self.header_name] = request.state.request_id
        return response


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")
