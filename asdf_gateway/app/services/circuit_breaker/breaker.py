"""Circuit Breaker Pattern for External Service Protection.

Prevents cascade failures by stopping requests to failing services
and allowing them time to recover.

States:
- CLOSED: Normal operation, calls allowed
- OPEN: Dependency failing, calls rejected until the cooldown elapses
- HALF_OPEN: Probing whether the dependency recovered

The OPEN -> HALF_OPEN transition is evaluated lazily when the next call
arrives; there is no timer. An idle breaker therefore reports OPEN until
it is probed.
"""

import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from asdf_gateway.app.core.audit import AuditSink, log_audit
from asdf_gateway.app.core.clock import Clock, system_clock
from asdf_gateway.app.core.logging import get_log_context, get_logger
from asdf_gateway.app.exceptions import (
    BulkheadRejectedError,
    CallTimeoutError,
    CircuitOpenError,
)
from asdf_gateway.app.services.circuit_breaker.bulkhead import Bulkhead
from asdf_gateway.app.services.circuit_breaker.models import (
    CallRecord,
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
    GlobalCircuitStats,
    percent,
)
from asdf_gateway.app.services.event_bus import EventBus, EventType

logger = get_logger(__name__)

Operation = Callable[..., Awaitable[Any]]


class CircuitBreaker:
    """Breaker with embedded bulkhead for one named dependency.

    Usage:
        breaker = CircuitBreaker("helius", CircuitBreakerConfig(failure_threshold=3))
        data = await breaker.execute(fetch_account, address)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        audit: Optional[AuditSink] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        global_stats: Optional[GlobalCircuitStats] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._audit = audit or log_audit
        self._event_bus = event_bus
        self._clock = clock or system_clock
        self._global = global_stats if global_stats is not None else GlobalCircuitStats()

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.last_state_change = self._clock.now()
        self.next_attempt = 0.0

        self.bulkhead = Bulkhead(name, self.config.max_concurrent, self.config.max_queue_depth)

        self._history: Deque[CallRecord] = deque()
        self.stats = CircuitStats()

    @property
    def active_calls(self) -> int:
        return self.bulkhead.active_calls

    @property
    def queued_calls(self) -> int:
        return self.bulkhead.queued_calls

    @property
    def call_history(self) -> List[CallRecord]:
        return list(self._history)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _admit(self) -> bool:
        """Apply the OPEN gate: reject before the deadline, go HALF_OPEN after it."""
        if self.state is not CircuitState.OPEN:
            return True
        if self._clock.now() < self.next_attempt:
            return False
        self._transition_to(CircuitState.HALF_OPEN)
        return True

    def _open_error(self) -> CircuitOpenError:
        return CircuitOpenError(self.name, retry_after=self.next_attempt - self._clock.now())

    async def execute(self, fn: Operation, *args: Any, **kwargs: Any) -> Any:
        """Run ``fn(*args, **kwargs)`` through the breaker.

        Returns the operation's result, or the fallback's result when the
        call is rejected or fails and a fallback is configured.

        Raises:
            CircuitOpenError: Circuit is open and no fallback is configured
            BulkheadRejectedError: Concurrency and queue capacity exhausted
            CallTimeoutError: The operation exceeded its timeout
            Exception: Whatever the operation (or the fallback) raised
        """
        if not self._admit():
            return await self._handle_rejection(self._open_error(), args, kwargs)

        try:
            await self.bulkhead.acquire()
        except BulkheadRejectedError as e:
            return await self._handle_rejection(e, args, kwargs)

        # The circuit may have opened while this call waited in the queue
        if not self._admit():
            self.bulkhead.release()
            return await self._handle_rejection(self._open_error(), args, kwargs)

        return await self._execute_call(fn, args, kwargs)

    async def _execute_call(self, fn: Operation, args: Tuple, kwargs: Dict[str, Any]) -> Any:
        """Run an admitted call. The bulkhead slot is already held."""
        self.stats.total_calls += 1
        self._global.total_calls += 1

        start = self._clock.monotonic()
        try:
            result = await self._invoke(fn, args, kwargs)
        except Exception as error:
            self._record_failure(error, self._elapsed_ms(start))
            if self.config.fallback is None:
                raise
            self.stats.fallbacks += 1
            return await self._call_fallback(error, args, kwargs)
        else:
            self._record_success(self._elapsed_ms(start))
            return result
        finally:
            self.bulkhead.release()

    async def _invoke(self, fn: Operation, args: Tuple, kwargs: Dict[str, Any]) -> Any:
        timeout = self.config.effective_call_timeout
        pending = fn(*args, **kwargs)
        if not inspect.isawaitable(pending):
            return pending
        try:
            return await asyncio.wait_for(pending, timeout=timeout)
        except asyncio.TimeoutError:
            self.stats.timeouts += 1
            raise CallTimeoutError(self.name, timeout) from None

    async def _call_fallback(self, error: Exception, args: Tuple, kwargs: Dict[str, Any]) -> Any:
        result = self.config.fallback(error, *args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _handle_rejection(self, error: Exception, args: Tuple, kwargs: Dict[str, Any]) -> Any:
        self.stats.rejections += 1
        logger.debug(
            f"Circuit {self.name} rejected call: {error}",
            extra=get_log_context(circuit=self.name),
        )

        if self.config.fallback is not None:
            self.stats.fallbacks += 1
            return await self._call_fallback(error, args, kwargs)

        raise error

    def _elapsed_ms(self, start: float) -> float:
        return round((self._clock.monotonic() - start) * 1000, 3)

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    def _record_success(self, duration_ms: float) -> None:
        self.success_count += 1
        self.stats.successes += 1
        self._global.total_successes += 1

        self._record_call(True, duration_ms)
        self._update_avg_response_time()

        if self.state is CircuitState.HALF_OPEN and self.success_count >= self.config.success_threshold:
            self._transition_to(CircuitState.CLOSED)

        if self.state is CircuitState.CLOSED:
            self.failure_count = 0

    def _record_failure(self, error: Exception, duration_ms: float) -> None:
        self.failure_count += 1
        self.stats.failures += 1
        self._global.total_failures += 1
        self.last_failure_time = self._clock.now()

        self._record_call(False, duration_ms, str(error) or type(error).__name__)

        if self.state is CircuitState.CLOSED:
            if self.failure_count >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)
        elif self.state is CircuitState.HALF_OPEN:
            # A single failed probe reopens the circuit
            self._transition_to(CircuitState.OPEN)

    def _record_call(self, success: bool, duration_ms: float, error: Optional[str] = None) -> None:
        self._history.append(
            CallRecord(
                timestamp=self._clock.now(),
                success=success,
                duration_ms=duration_ms,
                error=error,
            )
        )
        self.prune_history()

    def prune_history(self) -> int:
        """Drop call records past the retention window, then enforce the count cap.

        Returns:
            Number of records removed
        """
        removed = 0
        cutoff = self._clock.now() - self.config.stats_retention
        while self._history and self._history[0].timestamp <= cutoff:
            self._history.popleft()
            removed += 1
        while len(self._history) > self.config.history_max_entries:
            self._history.popleft()
            removed += 1
        return removed

    def _recent_calls(self) -> List[CallRecord]:
        window_start = self._clock.now() - self.config.stats_window
        return [h for h in self._history if h.timestamp > window_start]

    def _update_avg_response_time(self) -> None:
        durations = [h.duration_ms for h in self._recent_calls() if h.success]
        if durations:
            self.stats.avg_response_time_ms = round(sum(durations) / len(durations), 2)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self.state
        now = self._clock.now()
        self.state = new_state
        self.last_state_change = now

        if new_state is CircuitState.OPEN:
            self.next_attempt = now + self.config.open_duration
            self.success_count = 0
            self._global.circuit_opens += 1
        elif new_state is CircuitState.CLOSED:
            self.failure_count = 0
            self.success_count = 0
            self._global.circuit_closes += 1
        elif new_state is CircuitState.HALF_OPEN:
            self.success_count = 0

        payload = {"circuit": self.name, "from": old_state.value, "to": new_state.value}
        self._audit("circuit_state_change", payload)
        logger.info(
            f"Circuit {self.name}: {old_state.value} -> {new_state.value}",
            extra=get_log_context(circuit=self.name),
        )

        event = dict(payload, timestamp=now)
        if new_state is CircuitState.OPEN:
            event["next_attempt"] = self.next_attempt
        self._notify(EventType.CIRCUIT_STATE_CHANGED, event)

    def _notify(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish_nowait(event_type, data)

    def force_open(self) -> None:
        self._transition_to(CircuitState.OPEN)

    def force_close(self) -> None:
        self._transition_to(CircuitState.CLOSED)

    def reset(self) -> None:
        """Return to a pristine CLOSED state and clear call history."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None
        self.last_state_change = self._clock.now()
        self.next_attempt = 0.0
        self._history.clear()

        self._audit("circuit_reset", {"circuit": self.name})
        logger.info(f"Circuit {self.name} reset", extra=get_log_context(circuit=self.name))
        self._notify(EventType.CIRCUIT_RESET, {"circuit": self.name, "timestamp": self.last_state_change})

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        recent = self._recent_calls()
        recent_failures = sum(1 for h in recent if not h.success)

        stats = self.stats.to_dict()
        stats.update({
            "recent_calls": len(recent),
            "recent_failures": recent_failures,
            "recent_successes": len(recent) - recent_failures,
            "recent_failure_rate": percent(recent_failures, len(recent)),
        })

        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
            "next_attempt": self.next_attempt if self.state is CircuitState.OPEN else None,
            "active_calls": self.active_calls,
            "queued_calls": self.queued_calls,
            "bulkhead": self.bulkhead.get_stats(),
            "stats": stats,
            "config": self.config.public_dict(),
        }
