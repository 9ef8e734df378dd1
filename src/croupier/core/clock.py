"""
Time sources.

Ledger timestamps are unix seconds, so clocks report unix seconds too.
SystemClock is used in production; VirtualClock lets the scheduler,
executor and watcher be tested without real timers.
"""
import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """A source of wall-clock time and sleeps."""

    def now(self) -> float:
        """Current time in unix seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend for ``seconds`` of this clock's time."""
        ...


class SystemClock:
    """Real time."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class VirtualClock:
    """Manually advanced clock for tests.

    sleep() yields to the event loop once and advances time by the
    requested amount, so loops driven by it run without real waiting.

    Usage:
        clock = VirtualClock(start=1_700_000_000)
        clock.advance(61)
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds

    def set(self, timestamp: float) -> None:
        if timestamp < self._now:
            raise ValueError("cannot move a clock backwards")
        self._now = float(timestamp)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(0)
        self._now += max(0.0, seconds)
