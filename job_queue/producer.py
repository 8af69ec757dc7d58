"""
Producer — emits one message per tick onto the queue.

    ┌──────────┐  send   ┌───────────────┐
    │ Producer │────────▶│ Queue Service │
    └──────────┘         └───────────────┘

A failed send is logged and counted; the loop keeps ticking. Only the stop
event ends it.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from typing import Callable, Optional

from job_queue.clock import Clock, SystemClock
from job_queue.errors import QueueError
from job_queue.message_queue import QueueService
from models.schemas import LoopStats

logger = structlog.get_logger()

DEFAULT_PAYLOAD_PREFIX = "Hello from Service A"


def random_payload_factory(
    prefix: str = DEFAULT_PAYLOAD_PREFIX,
    rng: Optional[random.Random] = None,
) -> Callable[[], str]:
    """Payloads like "Hello from Service A 42"."""
    rng = rng or random.Random()

    def build() -> str:
        return f"{prefix} {rng.randint(1, 100)}"

    return build


class Producer:
    """
    Sends a payload to the queue every ``interval_seconds``.

    Usage:
        producer = Producer(queue, interval_seconds=5)
        await producer.start()      # background task
        ...
        await producer.stop()
    """

    def __init__(
        self,
        queue: QueueService,
        interval_seconds: float = 5.0,
        payload_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.payload_factory = payload_factory or random_payload_factory()
        self.clock = clock or SystemClock()
        self.stats = LoopStats()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def produce_once(self) -> str:
        """Build one payload and send it. Raises QueueError on failure."""
        payload = self.payload_factory()
        message_id = await self.queue.send(payload)
        logger.info("message_sent", queue=self.queue.queue_ref, message_id=message_id)
        return message_id

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> LoopStats:
        """Tick until ``stop_event`` is set. Returns the loop counters."""
        stop_event = stop_event or self._stop_event
        logger.info("producer_started",
                    queue=self.queue.queue_ref,
                    interval_s=self.interval_seconds)

        while not stop_event.is_set():
            self.stats.ticks += 1
            try:
                await self.produce_once()
                self.stats.sent += 1
            except QueueError as e:
                self.stats.failed += 1
                logger.warning("send_failed", **e.log_context())
            except Exception as e:
                self.stats.failed += 1
                logger.error("send_error",
                             queue=self.queue.queue_ref,
                             error=str(e),
                             exc_info=True)

            if await self.clock.wait(stop_event, self.interval_seconds):
                break

        logger.info("producer_stopped",
                    queue=self.queue.queue_ref,
                    sent=self.stats.sent,
                    failed=self.stats.failed)
        return self.stats

    async def start(self) -> asyncio.Task:
        """Start the loop as a background task."""
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(self._stop_event), name="producer")
        return self._task

    async def stop(self) -> None:
        """Signal the loop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._task and not self._task.done():
            await self._task
        self._task = None
