"""Bulkhead isolation for a single circuit.

Bounds the number of in-flight calls to one dependency and queues the
excess (FIFO) up to a fixed depth. Slots are handed directly from a
finishing call to the oldest waiter, so the active count never exceeds
``max_concurrent`` and queue draining needs no polling.
"""

import asyncio
from collections import deque
from typing import Deque

from asdf_gateway.app.exceptions import BulkheadRejectedError


class Bulkhead:
    """Concurrency cap with a bounded FIFO wait queue.

    Usage:
        bulkhead = Bulkhead("helius", max_concurrent=10, max_queue_depth=50)
        await bulkhead.acquire()
        try:
            await call_dependency()
        finally:
            bulkhead.release()
    """

    def __init__(self, name: str, max_concurrent: int = 10, max_queue_depth: int = 50):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_queue_depth < 0:
            raise ValueError("max_queue_depth must not be negative")
        self.name = name
        self.max_concurrent = max_concurrent
        self.max_queue_depth = max_queue_depth

        self.active_calls = 0
        self._waiters: Deque[asyncio.Future] = deque()

        self.total_queued = 0
        self.total_rejected = 0

    @property
    def queued_calls(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        """Take a slot, waiting in line if all slots are busy.

        Raises:
            BulkheadRejectedError: If no slot is free and the queue is full
        """
        if self.active_calls < self.max_concurrent and not self._waiters:
            self.active_calls += 1
            return

        if self.queued_calls >= self.max_queue_depth:
            self.total_rejected += 1
            raise BulkheadRejectedError(self.name, self.max_concurrent, self.max_queue_depth)

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self.total_queued += 1
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before cancellation
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Give the slot to the oldest waiter, or free it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # Ownership of the slot moves to the waiter; count unchanged
                waiter.set_result(None)
                return
        self.active_calls = max(0, self.active_calls - 1)

    def get_stats(self) -> dict:
        return {
            "max_concurrent": self.max_concurrent,
            "max_queue_depth": self.max_queue_depth,
            "active_calls": self.active_calls,
            "queued_calls": self.queued_calls,
            "available_permits": self.max_concurrent - self.active_calls,
            "available_queue": self.max_queue_depth - self.queued_calls,
            "total_queued": self.total_queued,
            "total_rejected": self.total_rejected,
        }
