"""Timer scheduling with explicit cancellation.

Polling and refresh loops register work here instead of sleeping on their own,
so that every timer they own can be cancelled through one token and tests can
drive time with ``ManualScheduler.advance``.
"""

import asyncio
import heapq
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cancels every timer and task attached to it."""

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Register a callback to run on cancel.

        Returns:
            A function that unregisters the callback
        """
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in cancellation callback: {e}", exc_info=True)


class TimerHandle:
    """Handle for a one-shot or repeating timer."""

    def __init__(self, token: Optional[CancellationToken] = None):
        self.token = token or CancellationToken()
        self._cancel_current: Optional[Callable[[], None]] = None
        self.token.add_callback(self._cancel_underlying)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        self.token.cancel()

    def _cancel_underlying(self) -> None:
        if self._cancel_current:
            self._cancel_current()
            self._cancel_current = None


class Scheduler(ABC):
    """Clock plus timers."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""

    @abstractmethod
    def _schedule(self, delay: float, fire: Callable[[], None]) -> Callable[[], None]:
        """Arrange for ``fire`` to run after ``delay``; return a canceller."""

    def call_later(
        self,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
        token: Optional[CancellationToken] = None,
    ) -> TimerHandle:
        """Run ``callback(*args)`` once after ``delay`` seconds.

        Coroutine results are spawned as tasks bound to the same token.
        """
        handle = TimerHandle(token)

        def _fire():
            handle._cancel_current = None
            if handle.cancelled:
                return
            self._invoke(callback, args, handle.token)

        if not handle.cancelled:
            handle._cancel_current = self._schedule(delay, _fire)
        return handle

    def call_every(
        self,
        interval: float,
        callback: Callable[..., Any],
        *args: Any,
        token: Optional[CancellationToken] = None,
    ) -> TimerHandle:
        """Run ``callback(*args)`` every ``interval`` seconds until cancelled.

        Intervals are fixed; there is no backoff.
        """
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        handle = TimerHandle(token)

        def _fire():
            handle._cancel_current = None
            if handle.cancelled:
                return
            self._invoke(callback, args, handle.token)
            if not handle.cancelled:
                handle._cancel_current = self._schedule(interval, _fire)

        if not handle.cancelled:
            handle._cancel_current = self._schedule(interval, _fire)
        return handle

    def spawn(
        self,
        coro: Awaitable[Any],
        token: Optional[CancellationToken] = None,
    ) -> "asyncio.Future":
        """Start a coroutine as a task, cancelled together with ``token``."""
        task = asyncio.ensure_future(coro)
        if token is not None:
            remove = token.add_callback(task.cancel)
            task.add_done_callback(lambda _t: remove())
        return task

    def _invoke(self, callback: Callable[..., Any], args: Tuple[Any, ...], token: CancellationToken) -> None:
        try:
            result = callback(*args)
        except Exception as e:
            logger.error(f"Error in scheduled callback: {e}", exc_info=True)
            return
        if asyncio.iscoroutine(result):
            self.spawn(result, token)


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def _schedule(self, delay: float, fire: Callable[[], None]) -> Callable[[], None]:
        timer = self.loop.call_later(delay, fire)
        return timer.cancel


class ManualScheduler(Scheduler):
    """Deterministic scheduler for tests: time only moves on ``advance``."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = itertools.count()
        self._timers: List[list] = []  # [due, seq, fire, live]

    def now(self) -> float:
        return self._now

    @property
    def pending_timers(self) -> int:
        return sum(1 for entry in self._timers if entry[3])

    def _schedule(self, delay: float, fire: Callable[[], None]) -> Callable[[], None]:
        entry = [self._now + max(0.0, delay), next(self._seq), fire, True]
        heapq.heappush(self._timers, entry)

        def _cancel():
            entry[3] = False

        return _cancel

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + seconds
        await self.settle()
        while self._timers and self._timers[0][0] <= target:
            due, _seq, fire, live = heapq.heappop(self._timers)
            self._now = max(self._now, due)
            if live:
                fire()
                await self.settle()
        self._now = target
        await self.settle()

    async def settle(self, rounds: int = 10) -> None:
        """Let spawned tasks run until they block."""
        for _ in range(rounds):
            await asyncio.sleep(0)
