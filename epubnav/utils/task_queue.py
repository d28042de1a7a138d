"""
Cooperative task queue for the asyncio event loop.

Work items run one at a time, with a short sleep between them so other
coroutines get a turn. The queue can be paused, resumed with run(), and
stopped (pending work is cancelled, not interrupted mid-item).
"""
import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable, Deque, Optional, Tuple

logger = logging.getLogger(__name__)


class TaskQueue:
    def __init__(self, tick: float = 0.0):
        self.tick = tick
        self._q: Deque[Tuple[Callable, tuple, asyncio.Future]] = deque()
        self._paused = False
        self._unpaused: Optional[asyncio.Event] = None
        self._runner: Optional[asyncio.Task] = None

    def __len__(self):
        return len(self._q)

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def paused(self) -> bool:
        return self._paused

    def enqueue(self, task: Callable, *args: Any) -> asyncio.Future:
        """
        Add a task (plain or coroutine function) and return a future for its result.
        Starts draining automatically unless the queue is paused.
        """
        future = asyncio.get_running_loop().create_future()
        self._q.append((task, args, future))

        if not self._paused and not self.running:
            self.run()

        return future

    async def dequeue(self):
        """Run the next task now. Errors end up on the task's future and in the log."""
        if not self._q:
            return None

        task, args, future = self._q.popleft()
        try:
            result = task(*args)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as e:
            logger.error(f"❌ Queued task '{getattr(task, '__name__', task)}' failed: {e}")
            if not future.done():
                future.set_exception(e)
            return None

        if not future.done():
            future.set_result(result)
        return result

    async def _drain(self):
        while self._q:
            await self._unpaused.wait()
            if not self._q:
                break
            await self.dequeue()
            await asyncio.sleep(self.tick)

    def run(self) -> asyncio.Task:
        """Resume processing. Returns the task that drains the queue."""
        if self._unpaused is None:
            self._unpaused = asyncio.Event()
        self._paused = False
        self._unpaused.set()

        if not self.running:
            self._runner = asyncio.get_running_loop().create_task(self._drain())
        return self._runner

    def pause(self):
        self._paused = True
        if self._unpaused is not None:
            self._unpaused.clear()

    def stop(self):
        """Drop all pending work. The task currently running is allowed to finish."""
        dropped = len(self._q)
        while self._q:
            _, _, future = self._q.popleft()
            if not future.done():
                future.cancel()
        if dropped:
            logger.debug(f"Task queue stopped, {dropped} pending task(s) dropped")

        self._paused = False
        if self._unpaused is not None:
            self._unpaused.set()
