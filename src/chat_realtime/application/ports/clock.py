from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Clock plus one-shot timers; every timer the core arms goes through here."""

    def now(self) -> datetime: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Default implementation backed by the running asyncio loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class RepeatingTimer:
    """Re-arms itself after each tick until cancelled."""

    def __init__(
        self,
        scheduler: Scheduler,
        interval: float,
        callback: Callable[[], None],
    ) -> None:
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._cancelled = False
        self._handle: TimerHandle = scheduler.call_later(interval, self._tick)

    def _tick(self) -> None:
        if self._cancelled:
            return
        self._handle = self._scheduler.call_later(self._interval, self._tick)
        self._callback()

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()


def call_every(
    scheduler: Scheduler,
    interval: float,
    callback: Callable[[], None],
) -> RepeatingTimer:
    return RepeatingTimer(scheduler, interval, callback)
