"""In-process event bus used to fan out resilience state changes.

Breakers and the rate limiter publish domain events here; broadcast and
notification collaborators subscribe without knowing the publishers.
"""

from .bus import EventBus
from .models import (
    Event,
    EventBusConfig,
    EventHandler,
    EventType,
    HandlerResult,
    PublishResult,
    Subscription,
)
from .sanitize import REDACTED, SENSITIVE_FIELDS, mask_identifier, sanitize_event_data

__all__ = [
    "EventBus",
    "Event",
    "EventBusConfig",
    "EventHandler",
    "EventType",
    "HandlerResult",
    "PublishResult",
    "Subscription",
    "REDACTED",
    "SENSITIVE_FIELDS",
    "mask_identifier",
    "sanitize_event_data",
]
