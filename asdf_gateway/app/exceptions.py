"""Custom exceptions for the gateway application."""

from typing import Optional


class GatewayException(Exception):
    """Base class for gateway exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "gateway_error"

    def __init__(self, message: str = "Gateway error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class ConfigurationError(GatewayException):
    """Raised on misuse of a component (unknown state, handler cap reached).

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error_code = "configuration_error"


class CircuitOpenError(GatewayException):
    """Raised when a circuit is OPEN and its cooldown has not elapsed.

    Callers should not retry before ``retry_after`` seconds.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error_code = "circuit_open"

    def __init__(self, circuit: str, retry_after: float = 0.0):
        self.circuit = circuit
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit '{circuit}' is open")

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "circuit": self.circuit,
            "retry_after": round(self.retry_after, 3),
        }


class BulkheadRejectedError(GatewayException):
    """Raised when a circuit's concurrency and queue capacity are exhausted.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503
    error_code = "bulkhead_rejected"

    def __init__(self, circuit: str, max_concurrent: int, max_queue_depth: int):
        self.circuit = circuit
        self.max_concurrent = max_concurrent
        self.max_queue_depth = max_queue_depth
        super().__init__(f"Circuit '{circuit}' queue full")


class CallTimeoutError(GatewayException):
    """Raised when a protected call exceeds its allotted time.

    Maps to HTTP 504 Gateway Timeout.
    """
    status_code = 504
    error_code = "call_timeout"

    def __init__(self, circuit: str, timeout: float):
        self.circuit = circuit
        self.timeout = timeout
        super().__init__(f"Circuit '{circuit}' call timed out after {timeout}s")


class RateLimitExceededError(GatewayException):
    """Raised by callers that turn a rate limit rejection into an exception.

    ``reason`` is one of ``rate_limit_exceeded``, ``temporary_ban`` or
    ``permanent_ban``. Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(
        self,
        retry_after: int = 0,
        reason: str = "rate_limit_exceeded",
        banned: bool = False,
        detail: Optional[str] = None,
    ):
        self.retry_after = retry_after
        self.reason = reason
        self.banned = banned
        if detail:
            message = detail
        elif reason == "permanent_ban":
            message = "You have been permanently banned due to excessive requests"
        elif banned:
            message = "You have been temporarily banned due to excessive requests"
        else:
            message = "Too many requests, please try again later"
        super().__init__(message)

    def to_response(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "retryAfter": self.retry_after,
            "banned": self.banned,
            "reason": self.reason,
        }


class HandlerError(GatewayException):
    """Failure of a single event bus handler.

    Never raised to publishers; carried in the per-handler publish results.
    """
    error_code = "handler_error"

    def __init__(self, event_type: str, handler_id: str, cause: BaseException):
        self.event_type = event_type
        self.handler_id = handler_id
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__)
