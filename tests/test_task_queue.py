import asyncio
import logging
import sys
from pathlib import Path

import pytest

# Add project root for `epubnav.*` imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from epubnav.utils.task_queue import TaskQueue


@pytest.mark.asyncio
async def test_enqueue_runs_tasks_in_order():
    q = TaskQueue()
    seen = []

    futures = [q.enqueue(seen.append, i) for i in range(5)]
    await asyncio.gather(*futures)

    assert seen == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_future_carries_result_of_coroutine_task():
    q = TaskQueue()

    async def double(value):
        await asyncio.sleep(0)
        return value * 2

    assert await q.enqueue(double, 21) == 42


@pytest.mark.asyncio
async def test_failed_task_sets_exception_and_queue_continues(caplog):
    caplog.set_level(logging.ERROR)
    q = TaskQueue()

    def explode():
        raise ValueError("bad section")

    failing = q.enqueue(explode)
    following = q.enqueue(lambda: "still runs")

    with pytest.raises(ValueError):
        await failing
    assert await following == "still runs"
    assert any("Queued task 'explode' failed" in record.message for record in caplog.records)


@pytest.mark.asyncio
async def test_paused_queue_waits_for_run():
    q = TaskQueue()
    q.pause()
    seen = []

    q.enqueue(seen.append, "a")
    q.enqueue(seen.append, "b")
    await asyncio.sleep(0.01)

    assert seen == []
    assert len(q) == 2
    assert q.paused

    await q.run()

    assert seen == ["a", "b"]
    assert len(q) == 0
    assert not q.running


@pytest.mark.asyncio
async def test_stop_cancels_pending_work():
    q = TaskQueue()
    q.pause()
    first = q.enqueue(lambda: 1)
    second = q.enqueue(lambda: 2)

    q.stop()

    assert first.cancelled()
    assert second.cancelled()
    assert len(q) == 0
    assert not q.paused


@pytest.mark.asyncio
async def test_dequeue_runs_one_task_directly():
    q = TaskQueue()
    q.pause()
    q.enqueue(lambda: "x")
    q.enqueue(lambda: "y")

    assert await q.dequeue() == "x"
    assert len(q) == 1

    q.stop()
    assert await q.dequeue() is None


@pytest.mark.asyncio
async def test_pause_mid_run_holds_remaining_tasks():
    q = TaskQueue(tick=0)
    seen = []

    def record_and_pause(value):
        seen.append(value)
        q.pause()

    q.enqueue(record_and_pause, 1)
    q.enqueue(seen.append, 2)
    await asyncio.sleep(0.01)

    assert seen == [1]

    await q.run()
    assert seen == [1, 2]
