"""Bounded-concurrency FIFO job queue.

Jobs wait in a plain list (no size bound) and are started in
submission order whenever fewer than ``concurrency`` are running.
With concurrency=1 jobs complete strictly in order.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskQueue(Generic[T]):
    """Runs ``process_item`` for queued items, at most N at a time."""

    def __init__(
        self,
        concurrency: int,
        process_item: Callable[[T], Awaitable[None]],
    ) -> None:
        self._concurrency = max(1, int(concurrency))
        self._process_item = process_item
        self._items: deque[T] = deque()
        self._active = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._items)

    def enqueue(self, item: T) -> None:
        """Append an item and start it if a slot is free."""
        self._items.append(item)
        self._pump()

    def clear(self) -> None:
        """Drop pending items. Running items are not interrupted."""
        dropped = len(self._items)
        self._items.clear()
        if dropped:
            logger.info("TaskQueue cleared %d pending item(s)", dropped)

    async def join(self) -> None:
        """Wait until no items are pending or running."""
        while self._tasks or self._items:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0)

    def _pump(self) -> None:
        while self._active < self._concurrency and self._items:
            item = self._items.popleft()
            self._active += 1
            task = asyncio.get_running_loop().create_task(self._run(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, item: T) -> None:
        try:
            await self._process_item(item)
        except Exception:
            # The worker boundary converts job errors into statuses; this
            # only guards the slot if that boundary itself raised.
            logger.exception("TaskQueue worker raised")
        finally:
            self._active -= 1
            self._pump()
