"""ZenTrade — schedulable clock.

Every timer in the engine (heartbeat, watchdog, request timeouts, reconnect
backoff, settlement escalation, sweeps) goes through a ``Clock``.  The live
engine uses ``LoopClock`` on the running asyncio loop; tests drive
``ManualClock`` forward in virtual time.
"""

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger("zentrade.clock")

TimerCallback = Callable[[], Any]


class TimerHandle:
    """Cancellable handle returned by ``call_later`` / ``call_every``."""

    def __init__(self) -> None:
        self.cancelled = False
        self._inner: Optional[Any] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._inner is not None:
            self._inner.cancel()
            self._inner = None


class Clock(Protocol):
    def now(self) -> float: ...

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle: ...

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle: ...


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Timer callback failed: %s", exc, exc_info=exc)


# ── Live clock ───────────────────────────────────────────────────────────


class LoopClock:
    """Wall-clock time with timers on the running asyncio loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        loop = asyncio.get_running_loop()
        handle._inner = loop.call_later(max(delay, 0.0), self._fire, handle, callback)
        return handle

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()

        def _tick() -> Any:
            if handle.cancelled:
                return None
            loop = asyncio.get_running_loop()
            handle._inner = loop.call_later(interval, self._fire, handle, _tick)
            return callback()

        loop = asyncio.get_running_loop()
        handle._inner = loop.call_later(interval, self._fire, handle, _tick)
        return handle

    def _fire(self, handle: TimerHandle, callback: TimerCallback) -> None:
        if handle.cancelled:
            return
        result = callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(_log_task_failure)


# ── Virtual clock ────────────────────────────────────────────────────────


class ManualClock:
    """Virtual clock for deterministic timing.

    Time only moves when ``advance()`` is awaited.  Due callbacks run in
    deadline order; coroutine callbacks are awaited before the next one
    fires, so a whole escalation cascade can be replayed without sleeping.

    Args:
        start: Initial virtual time in seconds.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._queue: list[tuple[float, int, TimerHandle, TimerCallback]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        self._push(self._now + max(delay, 0.0), handle, callback)
        return handle

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()

        def _tick() -> Any:
            self._push(self._now + interval, handle, _tick)
            return callback()

        self._push(self._now + interval, handle, _tick)
        return handle

    @property
    def pending(self) -> int:
        """Number of live (not cancelled) timers."""
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move virtual time forward, running every timer that falls due."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            result = callback()
            if inspect.isawaitable(result):
                await result
            await _drain_loop()
        self._now = target
        await _drain_loop()

    def _push(self, when: float, handle: TimerHandle, callback: TimerCallback) -> None:
        heapq.heappush(self._queue, (when, next(self._seq), handle, callback))


async def _drain_loop(rounds: int = 10) -> None:
    """Yield to the loop so tasks spawned by timers get to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
