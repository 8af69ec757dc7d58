"""Tests for the producer loop."""
import asyncio
import random

import pytest
from structlog.testing import capture_logs

from conftest import FlakyQueue
from job_queue.errors import MalformedInputError, TransientQueueError
from job_queue.producer import Producer, random_payload_factory


class TestPayloadFactory:
    def test_default_payload_shape(self):
        build = random_payload_factory(rng=random.Random(7))
        payload = build()
        prefix, number = payload.rsplit(" ", 1)
        assert prefix == "Hello from Service A"
        assert 1 <= int(number) <= 100

    def test_custom_prefix(self):
        build = random_payload_factory("Ping", rng=random.Random(7))
        assert build().startswith("Ping ")


class TestProduceOnce:
    @pytest.mark.asyncio
    async def test_returns_message_id_and_enqueues(self, memory_queue, clock):
        producer = Producer(memory_queue, payload_factory=lambda: "Hello from Service A 42", clock=clock)
        message_id = await producer.produce_once()

        [msg] = await memory_queue.receive()
        assert msg.message_id == message_id
        assert msg.payload == "Hello from Service A 42"

    @pytest.mark.asyncio
    async def test_transient_error_propagates(self, clock):
        queue = FlakyQueue(clock=clock, fail_sends={1})
        producer = Producer(queue, clock=clock)
        with pytest.raises(TransientQueueError):
            await producer.produce_once()

    @pytest.mark.asyncio
    async def test_malformed_payload_propagates(self, memory_queue, clock):
        producer = Producer(memory_queue, payload_factory=lambda: b"bytes", clock=clock)
        with pytest.raises(MalformedInputError):
            await producer.produce_once()


class TestProducerLoop:
    @pytest.mark.asyncio
    async def test_sends_every_interval_until_stopped(self, clock):
        stop = asyncio.Event()
        queue = FlakyQueue(clock=clock, stop_after_sends=4, stop_event=stop)
        producer = Producer(queue, interval_seconds=5, clock=clock)

        stats = await producer.run(stop)

        assert stats.ticks == 4
        assert stats.sent == 4
        assert await queue.queue_length() == 4
        gaps = [b - a for a, b in zip(queue.send_times, queue.send_times[1:])]
        assert gaps == [5, 5, 5]

    @pytest.mark.asyncio
    async def test_transient_failure_does_not_stop_loop(self, clock):
        stop = asyncio.Event()
        queue = FlakyQueue(clock=clock, fail_sends={2, 5}, stop_after_sends=6, stop_event=stop)
        producer = Producer(queue, interval_seconds=5, clock=clock)

        with capture_logs() as logs:
            stats = await producer.run(stop)

        assert stats.ticks == 6
        assert stats.failed == 2
        assert stats.sent == stats.ticks - stats.failed
        assert await queue.queue_length() == 4
        # The send after a failure still waits exactly one interval
        assert queue.send_times[2] - queue.send_times[1] == 5

        failures = [e for e in logs if e["event"] == "send_failed"]
        assert len(failures) == 2
        assert failures[0]["error_class"] == "transient"
        assert failures[0]["queue"] == queue.queue_ref

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged_and_loop_continues(self, memory_queue, clock):
        stop = asyncio.Event()
        calls = []

        def payload():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("payload generator broke")
            if len(calls) == 3:
                stop.set()
            return "ok"

        producer = Producer(memory_queue, payload_factory=payload, clock=clock)
        stats = await producer.run(stop)
        assert stats.failed == 1
        assert stats.sent == 2

    @pytest.mark.asyncio
    async def test_stop_before_start_sends_nothing(self, memory_queue, clock):
        stop = asyncio.Event()
        stop.set()
        stats = await Producer(memory_queue, clock=clock).run(stop)
        assert stats.ticks == 0
        assert await memory_queue.queue_length() == 0

    @pytest.mark.asyncio
    async def test_start_and_stop_background_task(self, memory_queue):
        producer = Producer(memory_queue, interval_seconds=0.01)
        await producer.start()
        await asyncio.sleep(0.05)
        await asyncio.wait_for(producer.stop(), timeout=1)
        assert producer.stats.sent >= 1
        assert await memory_queue.queue_length() == producer.stats.sent
