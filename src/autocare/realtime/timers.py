"""Schedulable timers for reconnect delays, polling and suppression windows.

Every time-dependent component takes a ``Scheduler`` instead of calling
``asyncio.sleep`` or ``loop.call_later`` directly. ``LoopScheduler`` backs
production use; ``ManualScheduler`` keeps a virtual clock that tests
advance explicitly.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
from typing import Any, Awaitable, Callable, Coroutine, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], "Awaitable[None] | None"]


class TimerHandle:
    """A scheduled callback that can be cancelled before it fires."""

    def __init__(self, when: float, callback: TimerCallback) -> None:
        self.when = when
        self.callback = callback
        self._cancelled = False
        self._loop_handle: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
            self._loop_handle = None


@runtime_checkable
class Scheduler(Protocol):
    """Clock and timer facility shared by the transport and the counters."""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle: ...

    async def sleep(self, delay: float) -> None: ...

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task: ...

    async def close(self) -> None: ...


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed", task.get_name(), exc_info=exc)


class _TaskTracker:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def cancel_all(self) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class LoopScheduler(_TaskTracker):
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self) -> None:
        super().__init__()
        self._handles: set[TimerHandle] = set()

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        handle = TimerHandle(loop.time() + max(0.0, delay), callback)
        handle._loop_handle = loop.call_later(max(0.0, delay), self._fire, handle)
        self._handles.add(handle)
        return handle

    def _fire(self, handle: TimerHandle) -> None:
        self._handles.discard(handle)
        if handle.cancelled:
            return
        handle._loop_handle = None
        result = handle.callback()
        if inspect.isawaitable(result):
            self.spawn(_await(result))

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))

    async def close(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        await self.cancel_all()


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable


class ManualScheduler(_TaskTracker):
    """Deterministic scheduler with a virtual clock.

    Timers only fire inside ``advance``; coroutine callbacks are awaited
    inline, so by the time ``advance`` returns every due callback has run
    to completion.
    """

    def __init__(self, start: float = 0.0) -> None:
        super().__init__()
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    async def sleep(self, delay: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        handle = self.call_later(delay, _wake)
        try:
            await future
        finally:
            handle.cancel()

    @property
    def pending(self) -> int:
        """Number of timers that are scheduled and not cancelled."""
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    async def advance(self, seconds: float = 0.0) -> None:
        """Move the clock forward, firing every timer that falls due."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            result = handle.callback()
            if inspect.isawaitable(result):
                await result
            await settle()
        self._now = target
        await settle()

    async def close(self) -> None:
        for _, _, handle in self._queue:
            handle.cancel()
        self._queue.clear()
        await self.cancel_all()


async def settle(rounds: int = 20) -> None:
    """Yield to the event loop until already-runnable tasks have progressed."""
    for _ in range(rounds):
        await asyncio.sleep(0)
