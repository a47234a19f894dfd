"""Concurrency-Bounded Task Queue: FIFO admission under a concurrency cap.

Admits at most ``max_concurrent`` operations at a time; the rest wait in
strict enqueue order. Whenever an active task settles (success or failure)
the oldest pending task is admitted. A failing task never blocks or
cancels its siblings.

All bookkeeping (pending deque, active count) is mutated synchronously
within a single event-loop turn, so no lock is needed under asyncio.
Running the queue across threads would require one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

from stream_gateway.gateway.types import QueueTask, TaskState

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_CONCURRENT = 3


class TaskQueue:
    """FIFO task queue with a concurrency cap.

    Usage:
        queue = TaskQueue(max_concurrent=3)
        result = await queue.add(lambda: call_gateway(request))
    """

    def __init__(self, max_concurrent: int = DEFAULT_MAX_CONCURRENT):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._pending: deque[QueueTask] = deque()
        self._running: set[asyncio.Task] = set()
        self._active: int = 0
        self._sequence: int = 0
        self._completed: int = 0

    async def add(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Enqueue an operation and wait for its result.

        Resolves or raises exactly as ``operation()`` would once admitted.
        """
        loop = asyncio.get_running_loop()
        self._sequence += 1
        task = QueueTask(
            operation=operation,
            future=loop.create_future(),
            sequence=self._sequence,
            enqueued_at=time.monotonic(),
        )
        self._pending.append(task)

        logger.debug(
            "Enqueued task #%d (active=%d, pending=%d)",
            task.sequence,
            self._active,
            len(self._pending),
        )
        self._admit()
        return await task.future

    def _admit(self) -> None:
        """Start pending tasks, oldest first, while below the cap."""
        while self._pending and self._active < self.max_concurrent:
            task = self._pending.popleft()
            self._active += 1
            task.state = TaskState.ACTIVE
            task.started_at = time.monotonic()

            runner = asyncio.ensure_future(self._run(task))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    async def _run(self, task: QueueTask) -> None:
        try:
            result = await task.operation()
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.cancel()
            raise
        except Exception as exc:
            if not task.future.done():
                task.future.set_exception(exc)
        except BaseException as exc:
            if not task.future.done():
                task.future.set_exception(exc)
            raise
        else:
            if not task.future.done():
                task.future.set_result(result)
        finally:
            task.state = TaskState.DONE
            task.completed_at = time.monotonic()
            self._active -= 1
            self._completed += 1
            self._admit()

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> dict:
        """Get queue statistics."""
        return {
            "active": self._active,
            "pending": len(self._pending),
            "completed": self._completed,
            "max_concurrent": self.max_concurrent,
        }
