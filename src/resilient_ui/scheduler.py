"""Timer scheduling for retry ticks, backoff, debounce and health checks.

Every delayed callback in the runtime goes through a ``Scheduler`` so the
asyncio-backed implementation can be swapped for ``ManualScheduler``, a
deterministic fake clock, in tests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Callable
from typing import Any, Protocol

import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_SETTLE_ROUNDS = 50


class TimerHandle(Protocol):
    """Cancellable handle for a scheduled callback."""

    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Clock plus delayed-callback primitive."""

    def monotonic(self) -> float: ...

    def wall_time(self) -> float: ...

    def call_later(
        self, delay: float, callback: Callable[[], Any]
    ) -> TimerHandle: ...

    async def sleep(self, delay: float) -> None: ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    def wall_time(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0.0))


class _ManualTimer:
    __slots__ = ("_cancelled", "callback", "seq", "when")

    def __init__(self, when: float, seq: int, callback: Callable[[], Any]) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self._cancelled = False

    def __lt__(self, other: _ManualTimer) -> bool:
        return (self.when, self.seq) < (other.when, other.seq)

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """Deterministic fake clock.

    Time only moves when ``advance`` is awaited. Timers fire in fire-time
    order (ties in scheduling order) and the event loop is allowed to
    settle after each one, so chains of callbacks and coroutines resolve
    before the next timer is considered.

    Attributes:
        epoch: Wall-clock seconds reported at monotonic time zero.
    """

    def __init__(self, epoch: float = 1_700_000_000.0) -> None:
        self.epoch = epoch
        self._now = 0.0
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()

    def monotonic(self) -> float:
        return self._now

    def wall_time(self) -> float:
        return self.epoch + self._now

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        timer = _ManualTimer(self._now + max(delay, 0.0), next(self._seq), callback)
        heapq.heappush(self._timers, timer)
        return timer

    async def sleep(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        handle = self.call_later(delay, _wake)
        try:
            await waiter
        finally:
            handle.cancel()

    @property
    def pending(self) -> int:
        """Number of live (uncancelled) timers."""
        return sum(1 for timer in self._timers if not timer.cancelled())

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing every timer that comes due.

        Args:
            seconds: Amount of fake time to elapse.
        """
        target = self._now + max(seconds, 0.0)
        await self._settle()
        while self._timers and self._timers[0].when <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled():
                continue
            self._now = timer.when
            timer.callback()
            await self._settle()
        self._now = target
        await self._settle()

    @staticmethod
    async def _settle() -> None:
        for _ in range(_SETTLE_ROUNDS):
            await asyncio.sleep(0)


class PeriodicTask:
    """Re-arming interval timer.

    The callback may be synchronous or return an awaitable; awaitables are
    scheduled as tasks and their failures logged, never raised.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        interval: float,
        callback: Callable[[], Any],
        name: str = "periodic",
    ) -> None:
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._name = name
        self._handle: TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is not None:
            return
        self._arm()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _arm(self) -> None:
        self._handle = self._scheduler.call_later(self._interval, self._fire)

    def _fire(self) -> None:
        self._arm()
        try:
            result = self._callback()
        except Exception as exc:
            logger.error("periodic_task_failed", task=self._name, error=str(exc))
            return
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("periodic_task_failed", task=self._name, error=str(exc))
