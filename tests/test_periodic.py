"""Tests for fixed-interval background sweeps."""

import asyncio

import pytest

from asdf_gateway.app.core.periodic import PeriodicTask


class TestPeriodicTask:
    @pytest.mark.asyncio
    async def test_runs_callback_every_interval(self):
        calls = []
        task = PeriodicTask("sweep", 0.01, lambda: calls.append(1))

        await task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert len(calls) >= 2
        assert task.runs == len(calls)
        assert not task.running

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self):
        done = asyncio.Event()

        async def sweep():
            done.set()

        task = PeriodicTask("sweep", 0.01, sweep)
        await task.start()
        await asyncio.wait_for(done.wait(), timeout=1)
        await task.stop()

        assert task.runs >= 1

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_sweep(self):
        calls = []

        def sweep():
            calls.append(1)
            raise RuntimeError("sweep failed")

        task = PeriodicTask("sweep", 0.01, sweep)
        await task.start()
        await asyncio.sleep(0.1)

        assert task.running
        await task.stop()
        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_interrupts_long_interval(self):
        calls = []
        task = PeriodicTask("sweep", 60, lambda: calls.append(1))

        await task.start()
        await asyncio.wait_for(task.stop(), timeout=1)

        assert calls == []

    @pytest.mark.asyncio
    async def test_start_twice_and_stop_without_start(self):
        task = PeriodicTask("sweep", 60, lambda: None)
        await task.stop()

        await task.start()
        first = task._task
        await task.start()

        assert task._task is first
        await task.stop()

    @pytest.mark.asyncio
    async def test_run_once(self):
        calls = []
        task = PeriodicTask("sweep", 60, lambda: calls.append(1))

        await task.run_once()

        assert calls == [1]
        assert task.runs == 1

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("sweep", 0, lambda: None)
