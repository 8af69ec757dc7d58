"""Shared test fixtures for message-relay."""
import asyncio
from typing import Optional

import pytest

from config.settings import Settings
from job_queue.clock import Clock
from job_queue.errors import TransientQueueError
from job_queue.message_queue import InMemoryQueueService


class FakeClock(Clock):
    """
    Clock whose time only moves when something sleeps or waits on it.
    Every suspension yields to the event loop so other tasks still run.
    """

    def __init__(self, start: float = 1000.0):
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)

    async def wait(self, event: asyncio.Event, timeout: float) -> bool:
        await asyncio.sleep(0)
        if event.is_set():
            return True
        if timeout > 0:
            self.sleeps.append(timeout)
            self._now += timeout
        await asyncio.sleep(0)
        return event.is_set()


class FlakyQueue(InMemoryQueueService):
    """
    In-memory queue that fails chosen send/delete calls with a transient error.
    ``fail_sends`` / ``fail_deletes`` hold 1-based call numbers.
    """

    def __init__(self, *args, fail_sends=(), fail_deletes=(), stop_after_sends: int = 0,
                 stop_event: Optional[asyncio.Event] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_sends = set(fail_sends)
        self.fail_deletes = set(fail_deletes)
        self.stop_after_sends = stop_after_sends
        self.stop_event = stop_event
        self.send_calls = 0
        self.delete_calls = 0
        self.send_times: list[float] = []

    async def send(self, payload: str) -> str:
        self.send_calls += 1
        self.send_times.append(self.clock.now())
        if self.stop_event is not None and self.send_calls >= self.stop_after_sends:
            self.stop_event.set()
        if self.send_calls in self.fail_sends:
            raise TransientQueueError("simulated network fault", queue_ref=self.queue_ref)
        return await super().send(payload)

    async def delete(self, receipt_handle: str) -> None:
        self.delete_calls += 1
        if self.delete_calls in self.fail_deletes:
            raise TransientQueueError("simulated network fault", queue_ref=self.queue_ref)
        await super().delete(receipt_handle)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_queue(clock) -> InMemoryQueueService:
    return InMemoryQueueService(queue_ref="memory://test", visibility_timeout=30, clock=clock)


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.queue.queue_url = "memory://test"
    return s
