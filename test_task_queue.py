import asyncio

import pytest

from tmtracker.task_queue import QueueFullError, TaskQueue


pytestmark = pytest.mark.asyncio


def _returning(value, log=None):
    async def task():
        await asyncio.sleep(0)
        if log is not None:
            log.append(value)
        return value
    return task


async def test_tasks_run_in_submission_order():
    queue = TaskQueue("fifo", concurrency=1, max_backlog=10)
    order = []

    futures = [queue.enqueue(_returning(i, order)) for i in range(5)]

    assert await asyncio.gather(*futures) == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]


async def test_concurrency_limit_is_respected():
    queue = TaskQueue("limited", concurrency=2, max_backlog=10)
    release = asyncio.Event()
    active = 0
    peak = 0

    async def task():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1

    futures = [queue.enqueue(task) for _ in range(5)]
    assert queue.running == 2
    assert queue.backlog == 3

    while active < 2:
        await asyncio.sleep(0)
    release.set()
    await asyncio.gather(*futures)
    assert peak == 2
    assert queue.running == 0


async def test_full_backlog_rejects_immediately():
    queue = TaskQueue("bounded", concurrency=1, max_backlog=2)
    release = asyncio.Event()

    async def blocker():
        await release.wait()

    running = queue.enqueue(blocker)
    waiting = [queue.enqueue(blocker), queue.enqueue(blocker)]

    with pytest.raises(QueueFullError) as exc:
        queue.enqueue(blocker)
    assert exc.value.queue_name == "bounded"
    assert queue.backlog == 2

    release.set()
    await asyncio.gather(running, *waiting)
    assert await queue.enqueue(_returning("accepted again")) == "accepted again"


async def test_failure_only_affects_its_own_task():
    queue = TaskQueue("isolated", concurrency=1, max_backlog=10)

    async def broken():
        raise ValueError("bad payload")

    failed = queue.enqueue(broken)
    ok = queue.enqueue(_returning("ok"))

    with pytest.raises(ValueError):
        await failed
    assert await ok == "ok"


async def test_close_cancels_queued_work():
    queue = TaskQueue("closing", concurrency=1, max_backlog=10)
    release = asyncio.Event()

    async def blocker():
        await release.wait()

    first = queue.enqueue(blocker)
    second = queue.enqueue(blocker)
    await asyncio.sleep(0)

    await queue.close()

    assert second.cancelled()
    assert first.cancelled()


async def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        TaskQueue("invalid", concurrency=0)
