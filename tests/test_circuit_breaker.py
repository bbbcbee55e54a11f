"""Tests for the circuit breaker state machine and bulkhead."""

import asyncio

import pytest
from unittest.mock import AsyncMock, Mock

from asdf_gateway.app.core.clock import ManualClock
from asdf_gateway.app.exceptions import (
    BulkheadRejectedError,
    CallTimeoutError,
    CircuitOpenError,
)
from asdf_gateway.app.services.circuit_breaker import (
    Bulkhead,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from asdf_gateway.app.services.event_bus import EventBus, EventType


class DownstreamError(Exception):
    pass


async def settle(rounds: int = 10) -> None:
    """Let every ready task run until it blocks."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def audit():
    return Mock()


def make_breaker(clock, audit, **overrides) -> CircuitBreaker:
    values = {"failure_threshold": 3, "success_threshold": 2, "open_duration": 30.0}
    values.update(overrides)
    return CircuitBreaker("test", CircuitBreakerConfig(**values), audit=audit, clock=clock)


async def trip(breaker: CircuitBreaker) -> None:
    failing = AsyncMock(side_effect=DownstreamError("boom"))
    for _ in range(breaker.config.failure_threshold):
        with pytest.raises(DownstreamError):
            await breaker.execute(failing)


class TestStateMachine:
    """Transitions between CLOSED, OPEN and HALF_OPEN."""

    @pytest.mark.asyncio
    async def test_success_passes_result_through(self, clock, audit):
        breaker = make_breaker(clock, audit)
        op = AsyncMock(return_value={"balance": 42})

        result = await breaker.execute(op, "wallet", commitment="finalized")

        assert result == {"balance": 42}
        op.assert_awaited_once_with("wallet", commitment="finalized")
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_failure_threshold(self, clock, audit):
        breaker = make_breaker(clock, audit)

        await trip(breaker)

        assert breaker.state is CircuitState.OPEN
        assert breaker.next_attempt == clock.now() + 30.0

    @pytest.mark.asyncio
    async def test_open_circuit_never_invokes_operation(self, clock, audit):
        breaker = make_breaker(clock, audit)
        await trip(breaker)
        op = AsyncMock(return_value="ok")

        for _ in range(5):
            clock.advance(5)
            with pytest.raises(CircuitOpenError) as exc_info:
                await breaker.execute(op)
            assert exc_info.value.retry_after > 0

        op.assert_not_called()
        assert breaker.stats.rejections == 5

    @pytest.mark.asyncio
    async def test_retry_after_counts_down(self, clock, audit):
        breaker = make_breaker(clock, audit)
        await trip(breaker)
        clock.advance(10)

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.execute(AsyncMock())

        assert exc_info.value.retry_after == pytest.approx(20.0)
        assert exc_info.value.circuit == "test"

    @pytest.mark.asyncio
    async def test_success_while_closed_resets_failure_count(self, clock, audit):
        breaker = make_breaker(clock, audit)
        failing = AsyncMock(side_effect=DownstreamError("boom"))

        for _ in range(2):
            with pytest.raises(DownstreamError):
                await breaker.execute(failing)
        assert breaker.failure_count == 2

        await breaker.execute(AsyncMock(return_value="ok"))
        assert breaker.failure_count == 0

        # Two more failures are not enough to open
        for _ in range(2):
            with pytest.raises(DownstreamError):
                await breaker.execute(failing)
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_transitions_to_half_open_lazily(self, clock, audit):
        breaker = make_breaker(clock, audit)
        await trip(breaker)

        clock.advance(30)
        # No call yet, so the breaker still reports OPEN
        assert breaker.state is CircuitState.OPEN

        await breaker.execute(AsyncMock(return_value="ok"))
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.success_count == 1

    @pytest.mark.asyncio
    async def test_half_open_closes_after_success_threshold(self, clock, audit):
        breaker = make_breaker(clock, audit)
        await trip(breaker)
        clock.advance(30)
        op = AsyncMock(return_value="ok")

        await breaker.execute(op)
        assert breaker.state is CircuitState.HALF_OPEN

        await breaker.execute(op)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.success_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens_immediately(self, clock, audit):
        breaker = make_breaker(clock, audit, success_threshold=3)
        await trip(breaker)
        clock.advance(30)

        await breaker.execute(AsyncMock(return_value="ok"))
        await breaker.execute(AsyncMock(return_value="ok"))
        assert breaker.success_count == 2

        with pytest.raises(DownstreamError):
            await breaker.execute(AsyncMock(side_effect=DownstreamError("again")))

        assert breaker.state is CircuitState.OPEN
        assert breaker.success_count == 0
        assert breaker.next_attempt == clock.now() + 30.0

    @pytest.mark.asyncio
    async def test_transitions_are_audited(self, clock, audit):
        breaker = make_breaker(clock, audit)
        await trip(breaker)
        clock.advance(30)
        await breaker.execute(AsyncMock(return_value="ok"))

        audit.assert_any_call("circuit_state_change", {"circuit": "test", "from": "closed", "to": "open"})
        audit.assert_any_call("circuit_state_change", {"circuit": "test", "from": "open", "to": "half_open"})

    @pytest.mark.asyncio
    async def test_transitions_are_published(self, clock, audit):
        bus = EventBus(clock=clock, audit=audit)
        received = []
        bus.subscribe(EventType.CIRCUIT_STATE_CHANGED, lambda event: received.append(event.data))
        breaker = CircuitBreaker(
            "helius",
            CircuitBreakerConfig(failure_threshold=1),
            audit=audit,
            event_bus=bus,
            clock=clock,
        )

        with pytest.raises(DownstreamError):
            await breaker.execute(AsyncMock(side_effect=DownstreamError("boom")))
        await bus.drain()

        assert len(received) == 1
        assert received[0]["circuit"] == "helius"
        assert received[0]["to"] == "open"
        assert received[0]["next_attempt"] == breaker.next_attempt


class TestTimeouts:
    """Call timeout handling."""

    @pytest.mark.asyncio
    async def test_slow_call_times_out_and_counts_as_failure(self, clock, audit):
        breaker = make_breaker(clock, audit, call_timeout=0.05)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CallTimeoutError) as exc_info:
            await breaker.execute(slow)

        assert exc_info.value.timeout == 0.05
        assert breaker.stats.timeouts == 1
        assert breaker.failure_count == 1
        assert breaker.active_calls == 0

    @pytest.mark.asyncio
    async def test_max_call_timeout_caps_call_timeout(self, clock, audit):
        breaker = make_breaker(clock, audit, call_timeout=10.0, max_call_timeout=0.05)
        assert breaker.config.effective_call_timeout == 0.05

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(CallTimeoutError):
            await breaker.execute(slow)


class TestFallback:
    """Fallbacks replace rejections and failures."""

    @pytest.mark.asyncio
    async def test_fallback_on_open_circuit(self, clock, audit):
        fallback = Mock(return_value="cached")
        breaker = make_breaker(clock, audit, fallback=fallback)
        breaker.force_open()
        op = AsyncMock()

        result = await breaker.execute(op, "arg")

        assert result == "cached"
        op.assert_not_called()
        error = fallback.call_args.args[0]
        assert isinstance(error, CircuitOpenError)
        assert fallback.call_args.args[1:] == ("arg",)
        assert breaker.stats.rejections == 1
        assert breaker.stats.fallbacks == 1

    @pytest.mark.asyncio
    async def test_fallback_on_failure_still_records_failure(self, clock, audit):
        async def fallback(error, *args, **kwargs):
            return {"degraded": True, "reason": str(error)}

        breaker = make_breaker(clock, audit, fallback=fallback)

        result = await breaker.execute(AsyncMock(side_effect=DownstreamError("rpc down")))

        assert result == {"degraded": True, "reason": "rpc down"}
        assert breaker.failure_count == 1
        assert breaker.stats.failures == 1

    @pytest.mark.asyncio
    async def test_fallback_error_propagates(self, clock, audit):
        def fallback(error, *args, **kwargs):
            raise RuntimeError("fallback broken")

        breaker = make_breaker(clock, audit, fallback=fallback)

        with pytest.raises(RuntimeError, match="fallback broken"):
            await breaker.execute(AsyncMock(side_effect=DownstreamError("boom")))


class TestBulkhead:
    """Concurrency bounding and FIFO queueing."""

    @pytest.mark.asyncio
    async def test_two_run_three_queue_fifo(self, clock, audit):
        breaker = make_breaker(clock, audit, max_concurrent=2, max_queue_depth=5)
        gates = [asyncio.Event() for _ in range(5)]
        started = []

        async def op(i):
            started.append(i)
            await gates[i].wait()
            return i

        tasks = [asyncio.create_task(breaker.execute(op, i)) for i in range(5)]
        await settle()

        assert started == [0, 1]
        assert breaker.active_calls == 2
        assert breaker.queued_calls == 3

        gates[1].set()
        await settle()
        assert started == [0, 1, 2]
        assert breaker.active_calls == 2

        gates[0].set()
        await settle()
        assert started == [0, 1, 2, 3]

        gates[2].set()
        await settle()
        assert started == [0, 1, 2, 3, 4]
        assert breaker.queued_calls == 0

        for gate in gates:
            gate.set()
        results = await asyncio.gather(*tasks)

        assert results == [0, 1, 2, 3, 4]
        assert breaker.active_calls == 0

    @pytest.mark.asyncio
    async def test_rejects_when_queue_full(self, clock, audit):
        breaker = make_breaker(clock, audit, max_concurrent=1, max_queue_depth=0)
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return "done"

        first = asyncio.create_task(breaker.execute(blocked))
        await settle()

        with pytest.raises(BulkheadRejectedError):
            await breaker.execute(AsyncMock())

        assert breaker.stats.rejections == 1
        gate.set()
        assert await first == "done"

    @pytest.mark.asyncio
    async def test_queued_call_rejected_if_circuit_opened_while_waiting(self, clock, audit):
        breaker = make_breaker(clock, audit, failure_threshold=1, max_concurrent=1, max_queue_depth=1)
        gate = asyncio.Event()

        async def failing_later():
            await gate.wait()
            raise DownstreamError("boom")

        queued_op = AsyncMock(return_value="never")
        first = asyncio.create_task(breaker.execute(failing_later))
        await settle()
        second = asyncio.create_task(breaker.execute(queued_op))
        await settle()
        assert breaker.queued_calls == 1

        gate.set()
        with pytest.raises(DownstreamError):
            await first
        with pytest.raises(CircuitOpenError):
            await second

        queued_op.assert_not_called()
        assert breaker.active_calls == 0

    async def queue_behind_open_circuit(self, breaker, clock, queued_op):
        """Hold the only slot, queue ``queued_op``, then open the circuit and let the cooldown pass."""
        gate = asyncio.Event()

        async def holding():
            await gate.wait()
            return "held"

        first = asyncio.create_task(breaker.execute(holding))
        await settle()
        second = asyncio.create_task(breaker.execute(queued_op))
        await settle()
        assert breaker.queued_calls == 1

        breaker.force_open()
        clock.advance(31)
        gate.set()
        assert await first == "held"
        return second

    @pytest.mark.asyncio
    async def test_queued_call_after_cooldown_enters_half_open(self, clock, audit):
        breaker = make_breaker(clock, audit, success_threshold=1, max_concurrent=1, max_queue_depth=1)

        second = await self.queue_behind_open_circuit(breaker, clock, AsyncMock(return_value="recovered"))

        assert await second == "recovered"
        assert breaker.state is CircuitState.CLOSED
        transitions = [
            (c.args[1]["from"], c.args[1]["to"])
            for c in audit.call_args_list
            if c.args[0] == "circuit_state_change"
        ]
        assert transitions[-2:] == [("open", "half_open"), ("half_open", "closed")]

    @pytest.mark.asyncio
    async def test_failed_queued_call_renews_cooldown(self, clock, audit):
        breaker = make_breaker(clock, audit, max_concurrent=1, max_queue_depth=1)

        second = await self.queue_behind_open_circuit(
            breaker, clock, AsyncMock(side_effect=DownstreamError("still down"))
        )

        with pytest.raises(DownstreamError):
            await second
        assert breaker.state is CircuitState.OPEN
        assert breaker.next_attempt == clock.now() + 30.0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        bulkhead = Bulkhead("test", max_concurrent=1, max_queue_depth=2)
        await bulkhead.acquire()

        waiter = asyncio.create_task(bulkhead.acquire())
        await settle()
        assert bulkhead.queued_calls == 1

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert bulkhead.queued_calls == 0
        bulkhead.release()
        assert bulkhead.active_calls == 0

    @pytest.mark.asyncio
    async def test_failed_call_frees_its_permit(self, clock, audit):
        breaker = make_breaker(clock, audit, max_concurrent=1, max_queue_depth=0)

        with pytest.raises(DownstreamError):
            await breaker.execute(AsyncMock(side_effect=DownstreamError("boom")))

        stats = breaker.get_status()["bulkhead"]
        assert stats["active_calls"] == 0
        assert stats["available_permits"] == 1

    def test_rejects_invalid_limits(self):
        with pytest.raises(ValueError):
            Bulkhead("test", max_concurrent=0)
        with pytest.raises(ValueError):
            Bulkhead("test", max_queue_depth=-1)


class TestStatusAndHistory:
    """Status snapshots, manual control and history pruning."""

    @pytest.mark.asyncio
    async def test_status_reports_recent_failure_rate(self, clock, audit):
        breaker = make_breaker(clock, audit)
        await breaker.execute(AsyncMock(return_value="ok"))
        with pytest.raises(DownstreamError):
            await breaker.execute(AsyncMock(side_effect=DownstreamError("boom")))

        status = breaker.get_status()

        assert status["name"] == "test"
        assert status["state"] == "closed"
        assert status["next_attempt"] is None
        assert status["stats"]["total_calls"] == 2
        assert status["stats"]["recent_calls"] == 2
        assert status["stats"]["recent_failure_rate"] == 50.0
        assert "fallback" not in status["config"]

    @pytest.mark.asyncio
    async def test_recent_stats_only_cover_stats_window(self, clock, audit):
        breaker = make_breaker(clock, audit, stats_window=60.0)
        with pytest.raises(DownstreamError):
            await breaker.execute(AsyncMock(side_effect=DownstreamError("boom")))

        clock.advance(61)
        await breaker.execute(AsyncMock(return_value="ok"))

        stats = breaker.get_status()["stats"]
        assert stats["recent_calls"] == 1
        assert stats["recent_failure_rate"] == 0.0

    def test_force_open_and_close(self, clock, audit):
        breaker = make_breaker(clock, audit)

        breaker.force_open()
        assert breaker.state is CircuitState.OPEN
        assert breaker.get_status()["next_attempt"] == clock.now() + 30.0

        breaker.force_close()
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_clears_counters_and_history(self, clock, audit):
        breaker = make_breaker(clock, audit)
        await trip(breaker)

        breaker.reset()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.last_failure_time is None
        assert breaker.call_history == []
        audit.assert_any_call("circuit_reset", {"circuit": "test"})

    @pytest.mark.asyncio
    async def test_history_pruned_by_retention_then_count(self, clock, audit):
        breaker = make_breaker(clock, audit, stats_window=60.0, stats_retention=120.0, history_max_entries=2)
        op = AsyncMock(return_value="ok")

        for _ in range(3):
            await breaker.execute(op)
        assert len(breaker.call_history) == 2

        clock.advance(121)
        assert breaker.prune_history() == 2
        assert breaker.call_history == []

    def test_config_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_treshold=3)

    def test_config_rejects_retention_shorter_than_window(self):
        with pytest.raises(ValueError):
            CircuitBreakerConfig(stats_window=60.0, stats_retention=30.0)
