"""
Clock — time source and suspension points for the loops.

The producer, the consumer and the in-memory queue never call asyncio.sleep
or time.monotonic directly; they go through a Clock so tests can swap in a
fake one and run hours of loop time instantly.
"""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod


class Clock(ABC):

    @abstractmethod
    def now(self) -> float:
        """Monotonic seconds."""
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        ...

    @abstractmethod
    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        """
        Wait until ``event`` is set or ``timeout`` elapses.
        Returns True if the event was set.
        """
        ...


class SystemClock(Clock):

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        if event.is_set():
            return True
        if timeout <= 0:
            return False
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
