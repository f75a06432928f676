"""Timer facility used for silence detection, restart delays and resume polling.

The pipeline never sleeps inside a callback; every wait is a scheduled
callback that the owning session cancels when it ends.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...
    def now(self) -> float: ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio loop and ``time.monotonic``."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, callback)

    def now(self) -> float:
        return time.monotonic()


class RepeatingTimer:
    """Fire ``callback`` every ``interval`` seconds until cancelled."""

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callable[[], None]) -> None:
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._handle: Optional[TimerHandle] = None
        self._cancelled = False

    def start(self) -> "RepeatingTimer":
        self._arm()
        return self

    def _arm(self) -> None:
        self._handle = self._scheduler.call_later(self._interval, self._tick)

    def _tick(self) -> None:
        if self._cancelled:
            return
        self._callback()
        if not self._cancelled:
            self._arm()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
