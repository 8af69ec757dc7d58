"""
Runner — wires settings, queue service and loops together.

Each loop owns the queue service it is given for the duration of the run;
``run_both`` runs producer and consumer as two tasks in one process, sharing
only the queue service.
"""
from __future__ import annotations

import asyncio
import signal
import structlog
from typing import Optional

from config.settings import Settings
from job_queue.clock import Clock
from job_queue.consumer import Consumer, Handler
from job_queue.message_queue import QueueService, create_queue_service
from job_queue.producer import Producer, random_payload_factory
from models.schemas import LoopStats

logger = structlog.get_logger()


def build_producer(settings: Settings, queue: QueueService, clock: Optional[Clock] = None) -> Producer:
    return Producer(
        queue,
        interval_seconds=settings.producer.interval_seconds,
        payload_factory=random_payload_factory(settings.producer.payload_prefix),
        clock=clock,
    )


def build_consumer(
    settings: Settings,
    queue: QueueService,
    handler: Optional[Handler] = None,
    clock: Optional[Clock] = None,
) -> Consumer:
    c = settings.consumer
    return Consumer(
        queue,
        handler=handler,
        poll_interval_seconds=c.poll_interval_seconds,
        wait_seconds=c.wait_seconds,
        max_messages=c.max_messages,
        delete_max_attempts=c.delete_max_attempts,
        delete_backoff_base=c.delete_backoff_base,
        delete_backoff_max=c.delete_backoff_max,
        dedupe_window=c.dedupe_window,
        clock=clock,
    )


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """SIGINT / SIGTERM set the stop event instead of killing the process."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, stop_event, sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform / not the main thread.
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(stop_event.set))


def _request_stop(stop_event: asyncio.Event, sig: signal.Signals) -> None:
    logger.info("shutdown_requested", signal=sig.name)
    stop_event.set()


async def run_producer(
    settings: Settings,
    stop_event: asyncio.Event,
    queue: Optional[QueueService] = None,
    clock: Optional[Clock] = None,
) -> LoopStats:
    queue = queue or create_queue_service(settings.queue, clock)
    async with queue:
        return await build_producer(settings, queue, clock).run(stop_event)


async def run_consumer(
    settings: Settings,
    stop_event: asyncio.Event,
    queue: Optional[QueueService] = None,
    handler: Optional[Handler] = None,
    clock: Optional[Clock] = None,
) -> LoopStats:
    queue = queue or create_queue_service(settings.queue, clock)
    async with queue:
        return await build_consumer(settings, queue, handler, clock).run(stop_event)


async def run_both(
    settings: Settings,
    stop_event: asyncio.Event,
    queue: Optional[QueueService] = None,
    handler: Optional[Handler] = None,
    clock: Optional[Clock] = None,
) -> dict[str, LoopStats]:
    """Run producer and consumer concurrently until ``stop_event`` is set."""
    queue = queue or create_queue_service(settings.queue, clock)
    async with queue:
        producer = build_producer(settings, queue, clock)
        consumer = build_consumer(settings, queue, handler, clock)
        producer_stats, consumer_stats = await asyncio.gather(
            producer.run(stop_event),
            consumer.run(stop_event),
        )
    return {"producer": producer_stats, "consumer": consumer_stats}
