import math
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from asdf_gateway.app.api import admin_router
from asdf_gateway.app.core.config import Settings, settings as default_settings
from asdf_gateway.app.core.context import ResilienceContext
from asdf_gateway.app.core.logging import get_log_context, get_logger, setup_logging
from asdf_gateway.app.exceptions import CircuitOpenError, GatewayException, RateLimitExceededError
from asdf_gateway.app.middleware.rate_limit import RateLimitMiddleware
from asdf_gateway.app.middleware.request_id import RequestIdMiddleware, get_request_id


def create_app(
    context: Optional[ResilienceContext] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        context: Prebuilt resilience context (tests pass their own). When
            omitted one is built from settings with a shared HTTP client.
        settings: Settings to use instead of the process-wide instance

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or (context.settings if context else default_settings)

    setup_logging()
    logger = get_logger(__name__)

    owns_client = context is None
    if context is None:
        context = ResilienceContext.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start background sweeps on startup; stop them and flush events on shutdown.

        When the app built its own context, the shared HTTP client lives for
        exactly the lifespan.
        """
        async with AsyncExitStack() as stack:
            if owns_client:
                # Per-call timeouts are enforced by the breakers
                http_client = await stack.enter_async_context(httpx.AsyncClient(timeout=None))
                context.attach_http_client(http_client)
                stack.callback(context.attach_http_client, None)

            if not settings.admin_token:
                logger.warning("ADMIN_TOKEN is not set; admin endpoints will refuse every request")

            await context.start()
            logger.info(
                "Application startup complete",
                extra={"circuits": list(context.registry.get_all_circuits())},
            )

            yield

            await context.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ASDF Gateway",
        description="Circuit breaking, rate limiting and event fan-out for outbound API calls",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.resilience = context

    # Add middleware (order matters: last added = first executed)
    if settings.rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=context.rate_limiter,
            skip=lambda request: request.url.path == "/health",
        )

    # Request ID middleware (outermost so limited responses carry the ID too)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check reporting circuit states."""
        circuits = {
            name: status["state"]
            for name, status in context.registry.get_all_circuits().items()
        }
        open_circuits = [name for name, state in circuits.items() if state == "open"]
        return {
            "status": "degraded" if open_circuits else "ok",
            "circuits": circuits,
            "open_circuits": open_circuits,
        }

    @app.exception_handler(GatewayException)
    async def gateway_exception_handler(request: Request, exc: GatewayException) -> JSONResponse:
        """Map gateway exceptions to JSON responses with their status code."""
        headers = {}
        if isinstance(exc, RateLimitExceededError) and exc.retry_after >= 0:
            headers["Retry-After"] = str(exc.retry_after)
        elif isinstance(exc, CircuitOpenError):
            headers["Retry-After"] = str(math.ceil(exc.retry_after))

        logger.info(
            f"{type(exc).__name__}: {exc.message}",
            extra=get_log_context(
                request_id=get_request_id(request),
                path=request.url.path,
                status_code=exc.status_code,
            ),
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode includes the
        exception message.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra=get_log_context(request_id=request_id, path=request.url.path),
        )

        content = {"error": "internal_error", "message": "Internal server error", "request_id": request_id}
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


app = create_app()
