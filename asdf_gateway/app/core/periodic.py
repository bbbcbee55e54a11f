"""Fixed-interval background sweeps.

Used for rate limiter cleanup and circuit call-history pruning. Each sweep
runs as an asyncio task that wakes on a fixed period and can be stopped
gracefully during shutdown.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from asdf_gateway.app.core.logging import get_logger

logger = get_logger(__name__)

SweepCallback = Callable[[], Union[None, Awaitable[Any]]]


class PeriodicTask:
    """Runs a callback every ``interval`` seconds until stopped.

    Usage:
        task = PeriodicTask("rate-limit-cleanup", 60.0, limiter.cleanup)
        await task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: SweepCallback,
        stop_timeout: float = 5.0,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._stop_timeout = stop_timeout
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug(f"Periodic task '{self.name}' already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"Started periodic task '{self.name}' (interval: {self.interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Periodic task '{self.name}' did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info(f"Stopped periodic task '{self.name}'")

    async def run_once(self) -> None:
        """Run the callback a single time, awaiting it if it is a coroutine."""
        result = self._callback()
        if inspect.isawaitable(result):
            await result
        self.runs += 1

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            # Wait for the next interval or until stopped
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error during periodic task '{self.name}': {e}")
