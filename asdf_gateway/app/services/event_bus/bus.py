"""In-process publish/subscribe event bus.

Handlers run sequentially in descending priority order, each under its own
timeout. A failing handler never affects other handlers or the publisher:
its error is logged, audited and returned in the per-handler results.
"""

import asyncio
import inspect
import uuid
from collections import Counter, deque
from typing import Any, Deque, Dict, List, Optional, Set

from asdf_gateway.app.core.audit import AuditSink, log_audit
from asdf_gateway.app.core.clock import Clock, system_clock
from asdf_gateway.app.core.logging import get_log_context, get_logger
from asdf_gateway.app.exceptions import ConfigurationError, HandlerError
from asdf_gateway.app.services.event_bus.models import (
    Event,
    EventBusConfig,
    EventHandler,
    HandlerResult,
    PublishResult,
    Subscription,
)
from asdf_gateway.app.services.event_bus.sanitize import sanitize_event_data

logger = get_logger(__name__)


def _short_id(prefix: str, now: float) -> str:
    return f"{prefix}_{int(now * 1000)}_{uuid.uuid4().hex[:6]}"


class EventBus:
    """Publish/subscribe bus with priorities, timeouts and bounded history.

    Usage:
        bus = EventBus()
        sub = bus.subscribe(EventType.CIRCUIT_STATE_CHANGED, on_change, priority=5)
        result = await bus.publish(EventType.CIRCUIT_STATE_CHANGED, {"circuit": "helius"})
        sub.unsubscribe()
    """

    def __init__(
        self,
        config: Optional[EventBusConfig] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config or EventBusConfig()
        self._audit = audit or log_audit
        self._clock = clock or system_clock

        # event type -> handler id -> subscription
        self._handlers: Dict[str, Dict[str, Subscription]] = {}
        self._history: Deque[Event] = deque(maxlen=self.config.history_size)

        # Global publish rate limiting
        self._events_this_second = 0
        self._second_start = self._clock.now()

        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        priority: int = 0,
        once: bool = False,
    ) -> Subscription:
        """Register a handler for an event type.

        Args:
            event_type: Event type to subscribe to
            handler: Sync or async callable receiving the ``Event``
            priority: Higher priorities run first
            once: Remove the handler after its first dispatch

        Returns:
            Subscription handle; call ``unsubscribe()`` to remove it

        Raises:
            ConfigurationError: If the handler is not callable or the
                per-event handler cap has been reached
        """
        if not callable(handler):
            raise ConfigurationError("Handler must be callable")

        handlers = self._handlers.setdefault(event_type, {})
        if len(handlers) >= self.config.max_handlers_per_event:
            raise ConfigurationError(f"Max handlers reached for event: {event_type}")

        subscription = Subscription(
            event_type=event_type,
            handler=handler,
            priority=priority,
            once=once,
            id=_short_id("h", self._clock.now()),
            _bus=self,
        )
        handlers[subscription.id] = subscription

        if self.config.debug:
            logger.debug(
                f"Subscribed to {event_type} ({len(handlers)} handlers)",
                extra=get_log_context(event_type=event_type),
            )
        return subscription

    def once(self, event_type: str, handler: EventHandler, priority: int = 0) -> Subscription:
        """Register a handler that fires at most one time."""
        return self.subscribe(event_type, handler, priority=priority, once=True)

    def _remove(self, subscription: Subscription) -> bool:
        handlers = self._handlers.get(subscription.event_type)
        if not handlers or handlers.get(subscription.id) is not subscription:
            return False
        del handlers[subscription.id]
        if self.config.debug:
            logger.debug(
                f"Unsubscribed from {subscription.event_type}",
                extra=get_log_context(event_type=subscription.event_type),
            )
        return True

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _consume_rate_budget(self, now: float) -> bool:
        if now - self._second_start > 1.0:
            self._events_this_second = 0
            self._second_start = now

        if self._events_this_second >= self.config.max_events_per_second:
            return False
        self._events_this_second += 1
        return True

    async def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> PublishResult:
        """Publish an event to all handlers of ``event_type``.

        Handlers are snapshotted, sorted by priority (descending) and invoked
        one after another. Handler failures never propagate.
        """
        now = self._clock.now()

        if not self._consume_rate_budget(now):
            self._audit("event_rate_limited", {"event_type": event_type})
            logger.warning(
                f"Event publish rate limited: {event_type}",
                extra=get_log_context(event_type=event_type),
            )
            return PublishResult(success=False, error="Rate limit exceeded")

        event = Event(
            type=event_type,
            data=sanitize_event_data(data if data is not None else {}),
            timestamp=now,
            id=_short_id("e", now),
        )
        self._record(event)

        handlers = self._handlers.get(event_type)
        if not handlers:
            if self.config.debug:
                logger.debug(f"No handlers for {event_type}", extra=get_log_context(event_type=event_type))
            return PublishResult(success=True, event=event)

        snapshot = sorted(handlers.values(), key=lambda s: s.priority, reverse=True)

        results: List[HandlerResult] = []
        for subscription in snapshot:
            if subscription.once:
                # An overlapping publish may already have claimed it
                if subscription.fired:
                    continue
                subscription.fired = True
            try:
                value = await self._execute_handler(subscription, event)
                results.append(HandlerResult(handler_id=subscription.id, success=True, result=value))
            except Exception as e:
                error = HandlerError(event_type, subscription.id, e)
                logger.error(
                    f"Handler error for {event_type}: {error.message}",
                    extra=get_log_context(event_type=event_type),
                )
                self._audit("event_handler_error", {"event_type": event_type, "error": error.message})
                results.append(
                    HandlerResult(
                        handler_id=subscription.id,
                        success=False,
                        error=error.message,
                        exception=error,
                    )
                )

        # once handlers are removed after the pass, never mid-iteration
        for subscription in snapshot:
            if subscription.once:
                subscription.unsubscribe()

        if self.config.debug:
            logger.debug(
                f"Published {event_type} to {len(snapshot)} handlers",
                extra=get_log_context(event_type=event_type),
            )

        return PublishResult(success=True, handler_results=results, event=event)

    async def _execute_handler(self, subscription: Subscription, event: Event) -> Any:
        result = subscription.handler(event)
        if inspect.isawaitable(result):
            try:
                return await asyncio.wait_for(result, timeout=self.config.handler_timeout)
            except asyncio.TimeoutError:
                raise TimeoutError("Handler timeout") from None
        return result

    def publish_nowait(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> Optional[asyncio.Task]:
        """Schedule a publish from synchronous code.

        Returns the scheduled task, or None when no event loop is running
        (the event is dropped in that case).
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(
                f"No running loop, dropping notification {event_type}",
                extra=get_log_context(event_type=event_type),
            )
            return None

        task = loop.create_task(self.publish(event_type, data))
        self._pending.add(task)
        task.add_done_callback(self._notification_done)
        return task

    def _notification_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Notification publish failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for all notifications scheduled with ``publish_nowait``."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _record(self, event: Event) -> None:
        event.recorded_at = self._clock.now()
        self._history.append(event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_event_history(
        self,
        limit: int = 50,
        event_type: Optional[str] = None,
        since: Optional[float] = None,
    ) -> List[Event]:
        """Return recorded events, newest first."""
        events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        if since is not None:
            events = [e for e in events if e.timestamp >= since]
        if limit <= 0:
            return []
        return list(reversed(events[-limit:]))

    def get_handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, {}))

    def get_registered_events(self) -> List[str]:
        return list(self._handlers.keys())

    def get_metrics(self) -> dict:
        handler_counts = {name: len(handlers) for name, handlers in self._handlers.items()}
        return {
            "registered_events": len(self._handlers),
            "total_handlers": sum(handler_counts.values()),
            "handler_counts": handler_counts,
            "history_size": len(self._history),
            "recent_event_counts": dict(Counter(e.type for e in self._history)),
            "events_per_second": self._events_this_second,
            "pending_notifications": len(self._pending),
            "config": self.config.model_dump(),
        }

    def clear_all_handlers(self) -> None:
        """Remove every subscription. Refused in production."""
        if not self.config.allow_clear:
            raise ConfigurationError("Cannot clear handlers in production")
        for handlers in self._handlers.values():
            for subscription in handlers.values():
                subscription._bus = None
        self._handlers.clear()
        logger.info("All event bus handlers cleared")
