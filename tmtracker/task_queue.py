from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Set, Tuple

from .config import logger


TaskFactory = Callable[[], Awaitable[Any]]


class QueueFullError(RuntimeError):
    """Raised when a queue's backlog is at capacity. Callers should ask the user to retry."""

    def __init__(self, queue_name: str, max_backlog: int):
        super().__init__(f"Queue '{queue_name}' is full ({max_backlog} items waiting)")
        self.queue_name = queue_name
        self.max_backlog = max_backlog


class TaskQueue:
    """FIFO work queue with bounded concurrency and a bounded backlog.

    ``enqueue`` returns a future resolving with the task's own outcome. A failing
    task only fails its own future; the queue keeps draining.
    """

    def __init__(self, name: str, concurrency: int = 1, max_backlog: int = 100):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.name = name
        self.concurrency = concurrency
        self.max_backlog = max_backlog
        self._pending: Deque[Tuple[TaskFactory, str, asyncio.Future]] = deque()
        self._running = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def backlog(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> int:
        return self._running

    def enqueue(self, task: TaskFactory, description: str = "task") -> asyncio.Future:
        if len(self._pending) >= self.max_backlog:
            logger.warning(f"Queue '{self.name}' full, rejecting {description}")
            raise QueueFullError(self.name, self.max_backlog)

        future = asyncio.get_running_loop().create_future()
        self._pending.append((task, description, future))
        logger.debug(f"Queued {description} on '{self.name}' (backlog {len(self._pending)}, running {self._running})")
        self._drain()
        return future

    def _drain(self) -> None:
        while self._running < self.concurrency and self._pending:
            task, description, future = self._pending.popleft()
            self._running += 1
            runner = asyncio.create_task(self._run(task, description, future))
            self._tasks.add(runner)
            runner.add_done_callback(self._tasks.discard)

    async def _run(self, task: TaskFactory, description: str, future: asyncio.Future) -> None:
        try:
            if future.cancelled():
                return
            result = await task()
            if not future.done():
                future.set_result(result)
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            logger.error(f"Task {description} failed on '{self.name}': {e}")
            if not future.done():
                future.set_exception(e)
        finally:
            self._running -= 1
            self._drain()

    async def join(self) -> None:
        """Wait until nothing is queued or running."""
        while self._pending or self._running:
            await asyncio.sleep(0.01)

    async def close(self) -> None:
        """Drop queued items and cancel in-flight ones."""
        while self._pending:
            _, _, future = self._pending.popleft()
            future.cancel()
        for runner in list(self._tasks):
            runner.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
