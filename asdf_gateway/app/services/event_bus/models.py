"""Event bus data models."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from asdf_gateway.app.core.config import Settings
from asdf_gateway.app.exceptions import HandlerError

EventHandler = Callable[["Event"], Union[Any, Awaitable[Any]]]


class EventType:
    """Event type names published by the gateway.

    Payload schemas are append-only: consumers must tolerate new fields.
    """
    CIRCUIT_STATE_CHANGED = "circuit:state_changed"
    CIRCUIT_RESET = "circuit:reset"

    RATE_LIMIT_HIT = "rate_limit:hit"
    RATE_LIMIT_TEMP_BAN = "rate_limit:temp_ban"
    RATE_LIMIT_PERMA_BAN = "rate_limit:perma_ban"
    RATE_LIMIT_UNBAN = "rate_limit:unban"

    WEBHOOK_RECEIVED = "webhook:received"
    ERROR_OCCURRED = "error:occurred"


class EventBusConfig(BaseModel):
    """Event bus limits."""
    model_config = ConfigDict(extra="forbid")

    max_handlers_per_event: int = Field(default=21, ge=1)
    history_size: int = Field(default=100, ge=1)
    handler_timeout: float = Field(default=5.0, gt=0)
    max_events_per_second: int = Field(default=100, ge=1)
    debug: bool = False
    allow_clear: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "EventBusConfig":
        return cls(
            max_handlers_per_event=settings.event_bus_max_handlers_per_event,
            history_size=settings.event_bus_history_size,
            handler_timeout=settings.event_bus_handler_timeout_seconds,
            max_events_per_second=settings.event_bus_max_events_per_second,
            debug=settings.debug,
            allow_clear=not settings.is_production,
        )


@dataclass
class Event:
    """A published event. ``data`` is already sanitized."""
    type: str
    data: Dict[str, Any]
    timestamp: float
    id: str
    recorded_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
            "recorded_at": self.recorded_at,
        }


@dataclass(eq=False)
class Subscription:
    """Handler registration. Compared by identity so unsubscribe is exact."""
    event_type: str
    handler: EventHandler
    priority: int = 0
    once: bool = False
    id: str = ""
    fired: bool = False  # Set when a once handler is claimed by a publish
    _bus: Any = field(default=None, repr=False)

    def unsubscribe(self) -> bool:
        """Remove this handler from its bus. Returns False if already removed."""
        if self._bus is None:
            return False
        removed = self._bus._remove(self)
        self._bus = None
        return removed


@dataclass
class HandlerResult:
    """Outcome of one handler invocation during a publish."""
    handler_id: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    exception: Optional[HandlerError] = None


@dataclass
class PublishResult:
    """Outcome of a publish call.

    ``success`` is False only when the publish itself was refused (rate
    limited); handler failures are reported per entry in ``handler_results``.
    """
    success: bool
    handler_results: List[HandlerResult] = field(default_factory=list)
    event: Optional[Event] = None
    error: Optional[str] = None

    @property
    def failures(self) -> List[HandlerResult]:
        return [r for r in self.handler_results if not r.success]
