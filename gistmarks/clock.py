"""
Clocks for scheduling periodic work.

Code that waits goes through a Clock so tests can swap in ManualClock and
move time forward explicitly instead of sleeping.
"""
import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from typing import List, Tuple


class Clock(ABC):
    """Source of monotonic time plus a way to wait on it."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        pass


class SystemClock(Clock):
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock(Clock):
    """Clock that only moves when told to.

    Example:
        >>> clock = ManualClock()
        >>> await clock.advance(10)   # wakes every sleeper due within 10s
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []
        self._order = itertools.count()

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._order), future))
        await future

    @property
    def pending(self) -> int:
        """Number of sleepers still waiting."""
        return sum(1 for _, _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking due sleepers in deadline order."""
        target = self._now + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, deadline)
            if not future.done():
                future.set_result(None)
                await self.settle()
        self._now = target
        await self.settle()

    @staticmethod
    async def settle(rounds: int = 20) -> None:
        """Let runnable tasks proceed until they block again."""
        for _ in range(rounds):
            await asyncio.sleep(0)
