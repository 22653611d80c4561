"""Keyed work queue with deduplication and delayed requeues."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by get() once the queue was shut down."""

    pass


class WorkQueue:
    """
    Work queue handing out cluster keys to reconcile workers.

    A key is held at most once in the queue. A key that is added while a
    worker processes it is parked and queued again when the worker calls
    done(), so two passes over the same key never overlap.
    """

    def __init__(self, backoff_base: float = 5.0, backoff_max: float = 300.0):
        """
        Initialize queue.

        Args:
            backoff_base: First delay of rate limited requeues (seconds)
            backoff_max: Upper bound of rate limited requeues (seconds)
        """
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._shutdown = False

    def add(self, key: str) -> None:
        """Queue a key unless it is already waiting."""
        if self._shutdown:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float) -> None:
        """Queue a key after a delay; an earlier pending requeue wins."""
        if self._shutdown:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        pending = self._timers.get(key)
        if pending is not None:
            if pending.when() <= when:
                return
            pending.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def backoff(self, key: str) -> float:
        """Delay of the next rate limited requeue of a key."""
        failures = self._failures.get(key, 0)
        return min(self.backoff_base * (2 ** failures), self.backoff_max)

    def add_rate_limited(self, key: str) -> float:
        """
        Queue a key after an exponentially growing delay.

        Returns:
            Applied delay in seconds
        """
        delay = self.backoff(key)
        self._failures[key] = self._failures.get(key, 0) + 1
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff of a key after a clean pass."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> str:
        """
        Wait for the next key and mark it as being processed.

        Raises:
            QueueShutDown: If the queue was shut down
        """
        key = await self._queue.get()
        if key is None or self._shutdown:
            # Wake the next waiting worker as well.
            self._queue.put_nowait(None)
            raise QueueShutDown()
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        """Mark a key as processed, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shutdown(self) -> None:
        """Stop handing out keys and drop pending requeues."""
        self._shutdown = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)

    def __len__(self) -> int:
        return len(self._queued)
