"""Tests for the keyed work queue."""

import asyncio

import pytest

from vm_operator.queue import QueueShutDown, WorkQueue


class TestWorkQueue:
    """Test cases for WorkQueue."""

    @pytest.mark.asyncio
    async def test_duplicate_adds_are_collapsed(self):
        queue = WorkQueue()
        queue.add("default/a")
        queue.add("default/a")
        queue.add("default/b")

        assert len(queue) == 2
        assert await queue.get() == "default/a"
        assert await queue.get() == "default/b"

    @pytest.mark.asyncio
    async def test_key_added_during_processing_is_deferred(self):
        """Test that a key is never handed out twice at the same time."""
        queue = WorkQueue()
        queue.add("default/a")
        key = await queue.get()

        queue.add("default/a")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "default/a"

    @pytest.mark.asyncio
    async def test_add_after(self):
        queue = WorkQueue()
        queue.add_after("default/a", 0.01)
        assert len(queue) == 0

        key = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "default/a"

    @pytest.mark.asyncio
    async def test_earlier_requeue_wins(self):
        queue = WorkQueue()
        queue.add_after("default/a", 10)
        queue.add_after("default/a", 0.01)

        key = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "default/a"
        queue.done(key)
        # The later timer was replaced, not kept
        assert queue._timers == {}

    @pytest.mark.asyncio
    async def test_rate_limited_backoff_grows(self):
        queue = WorkQueue(backoff_base=5, backoff_max=30)

        delays = [queue.add_rate_limited("default/a") for _ in range(5)]

        assert delays == [5, 10, 20, 30, 30]
        assert queue.num_requeues("default/a") == 5
        queue.forget("default/a")
        assert queue.backoff("default/a") == 5
        queue.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_releases_workers(self):
        queue = WorkQueue()
        waiters = [asyncio.create_task(queue.get()) for _ in range(2)]
        await asyncio.sleep(0)

        queue.shutdown()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert all(isinstance(r, QueueShutDown) for r in results)
        queue.add("default/a")
        assert len(queue) == 0
