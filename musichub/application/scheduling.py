from __future__ import annotations

import asyncio
import math
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .store import Observable


T = TypeVar("T")


class CancellableTimer:
    """One-shot timer bound to the running event loop."""

    def __init__(self, delay_sec: float, callback: Callable[[], None]) -> None:
        self.delay_sec = max(0.0, delay_sec)
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fired = False

    def start(self) -> "CancellableTimer":
        """Arm the timer. Must be called from inside a running loop."""
        loop = asyncio.get_running_loop()
        self.cancel()
        self._fired = False
        self._handle = loop.call_later(self.delay_sec, self._fire)
        return self

    def _fire(self) -> None:
        self._handle = None
        self._fired = True
        self._callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    @property
    def fired(self) -> bool:
        return self._fired


class Cooldown(Observable[int]):
    """Local block window with a per-second countdown.

    remaining_seconds() is computed from the clock, so it is correct with or
    without a running loop; the tick notifications only happen inside one.
    """

    def __init__(self, duration_sec: float, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__()
        self.duration_sec = duration_sec
        self._clock = clock
        self._deadline: Optional[float] = None
        self._ticker: Optional[CancellableTimer] = None

    def start(self) -> None:
        if self.duration_sec <= 0:
            return
        self._deadline = self._clock() + self.duration_sec
        self._notify(self.remaining_seconds())
        self._schedule_tick()

    def _schedule_tick(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
        try:
            self._ticker = CancellableTimer(1.0, self._tick).start()
        except RuntimeError:
            # no running loop: countdown stays queryable, just not pushed
            self._ticker = None

    def _tick(self) -> None:
        remaining = self.remaining_seconds()
        self._notify(remaining)
        if remaining > 0:
            self._schedule_tick()
        else:
            self._deadline = None

    def remaining(self) -> float:
        if self._deadline is None:
            return 0.0
        return max(0.0, self._deadline - self._clock())

    def remaining_seconds(self) -> int:
        return int(math.ceil(self.remaining()))

    @property
    def active(self) -> bool:
        return self.remaining() > 0

    def reset(self) -> None:
        self._deadline = None
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None


async def bounded(awaitable: Awaitable[T], timeout_sec: Optional[float]) -> T:
    """Await with an upper bound; None means no bound."""
    if timeout_sec is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout_sec)
