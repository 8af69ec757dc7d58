"""
Consumer — polls the queue, runs the handler, deletes what succeeded.

Per-message lifecycle as seen from here:

  Available ──poll──▶ InFlight ──handler ok + delete──▶ Deleted
                         │
                         ├── handler raised (no delete) ──┐
                         ├── delete: stale handle ────────┤
                         ├── delete: unexpected error ────┤
                         └── delete: retries exhausted ───┴─▶ Available again
                                                              after the visibility
                                                              timeout (redelivery)

Nothing here ever drops a message: anything not deleted is left for the
queue service to redeliver. There is no dead-letter handling; a message that
always fails keeps coming back until the service's own policy intervenes.
"""
from __future__ import annotations

import asyncio
import inspect
import structlog
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Optional, Union

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt,
    wait_exponential,
)

from job_queue.clock import Clock, SystemClock
from job_queue.errors import (
    DeleteRetriesExhausted, MalformedInputError, QueueError, StaleHandleError,
    TransientQueueError,
)
from job_queue.message_queue import QueueService
from models.schemas import AckOutcome, DeliveryAttempt, LoopStats

logger = structlog.get_logger()

Handler = Callable[[DeliveryAttempt], Union[None, Awaitable[None]]]


async def log_message_handler(attempt: DeliveryAttempt) -> None:
    """Default handler: log the payload."""
    logger.info(f"Received message: {attempt.payload}", message_id=attempt.message_id)


class Consumer:
    """
    Pulls batches from the queue and acknowledges each processed message.

    Usage:
        consumer = Consumer(queue, handler=my_handler)
        await consumer.start()        # background task
        ...
        await consumer.stop()

    The handler receives a DeliveryAttempt and may be sync or async. Raising
    marks the attempt failed; the message is not deleted.
    """

    def __init__(
        self,
        queue: QueueService,
        handler: Optional[Handler] = None,
        poll_interval_seconds: float = 2.0,
        wait_seconds: float = 10.0,
        max_messages: int = 1,
        delete_max_attempts: int = 3,
        delete_backoff_base: float = 0.5,
        delete_backoff_max: float = 5.0,
        dedupe_window: int = 1000,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.handler = handler or log_message_handler
        self.poll_interval_seconds = poll_interval_seconds
        self.wait_seconds = wait_seconds
        self.max_messages = max_messages
        self.delete_max_attempts = delete_max_attempts
        self.delete_backoff_base = delete_backoff_base
        self.delete_backoff_max = delete_backoff_max
        self.dedupe_window = dedupe_window
        self.clock = clock or SystemClock()
        self.stats = LoopStats()
        self._processed: OrderedDict[str, None] = OrderedDict()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ── Polling ───────────────────────────────────────────────

    async def poll(
        self,
        max_messages: Optional[int] = None,
        wait_seconds: Optional[float] = None,
    ) -> list[DeliveryAttempt]:
        """Receive up to ``max_messages``; an empty list means the queue was idle."""
        messages = await self.queue.receive(
            max_messages=self.max_messages if max_messages is None else max_messages,
            wait_seconds=self.wait_seconds if wait_seconds is None else wait_seconds,
        )
        now = self.clock.now()
        timeout = self.queue.visibility_timeout
        return [
            DeliveryAttempt(
                message=message,
                received_at=now,
                visible_again_at=now + timeout if timeout is not None else None,
            )
            for message in messages
        ]

    async def _poll_until_stopped(self, stop_event: asyncio.Event) -> list[DeliveryAttempt]:
        """Poll, but give up waiting as soon as ``stop_event`` is set."""
        poll_task = asyncio.ensure_future(self.poll())
        stop_task = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({poll_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            poll_task.cancel()
            raise
        finally:
            stop_task.cancel()

        if poll_task.done():
            return poll_task.result()

        # Anything the service handed out mid-cancel simply times out and redelivers.
        poll_task.cancel()
        try:
            await poll_task
        except asyncio.CancelledError:
            pass
        logger.info("poll_interrupted", queue=self.queue.queue_ref)
        return []

    # ── Processing ────────────────────────────────────────────

    async def process_and_ack(self, attempt: DeliveryAttempt) -> AckOutcome:
        """
        Run the handler and, only if it succeeds, delete the message.

        A message id seen within the dedupe window skips the handler and
        is only deleted.
        """
        log = logger.bind(queue=self.queue.queue_ref,
                          message_id=attempt.message_id,
                          receive_count=attempt.message.receive_count)

        duplicate = attempt.message_id in self._processed
        if duplicate:
            log.info("duplicate_delivery_skipped")
        else:
            try:
                result = self.handler(attempt)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.warning("processing_failed", error=str(e), exc_info=True)
                return AckOutcome.PROCESSING_FAILED
            self._remember(attempt.message_id)

        outcome = await self._delete(attempt, log)
        if duplicate and outcome is AckOutcome.DELETED:
            return AckOutcome.DUPLICATE
        return outcome

    async def _delete(self, attempt: DeliveryAttempt, log: Any) -> AckOutcome:
        try:
            await self._delete_with_retry(attempt.receipt_handle)
        except StaleHandleError as e:
            log.warning("delete_stale_handle", **e.log_context())
            return AckOutcome.STALE_HANDLE
        except DeleteRetriesExhausted as e:
            log.error("delete_retries_exhausted", **e.log_context())
            return AckOutcome.DELETE_EXHAUSTED
        except MalformedInputError as e:
            log.error("delete_rejected", **e.log_context())
            return AckOutcome.DELETE_REJECTED
        except QueueError as e:
            log.error("delete_failed", **e.log_context())
            return AckOutcome.DELETE_FAILED
        except Exception as e:
            log.error("delete_error", error_class=type(e).__name__, error=str(e), exc_info=True)
            return AckOutcome.DELETE_FAILED

        log.debug("message_deleted")
        return AckOutcome.DELETED

    async def _delete_with_retry(self, receipt_handle: str) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.delete_max_attempts),
            wait=wait_exponential(multiplier=self.delete_backoff_base, max=self.delete_backoff_max),
            retry=retry_if_exception_type(TransientQueueError),
            sleep=self.clock.sleep,
            before_sleep=self._log_delete_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.queue.delete(receipt_handle)
        except TransientQueueError as e:
            raise DeleteRetriesExhausted(
                f"delete failed after {self.delete_max_attempts} attempts: {e}",
                queue_ref=self.queue.queue_ref,
                message_id=e.message_id,
            ) from e

    def _log_delete_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info("delete_retry_scheduled",
                    queue=self.queue.queue_ref,
                    attempt=retry_state.attempt_number,
                    wait_s=retry_state.next_action.sleep if retry_state.next_action else None,
                    error=str(error))

    def _remember(self, message_id: str) -> None:
        if self.dedupe_window <= 0:
            return
        self._processed[message_id] = None
        self._processed.move_to_end(message_id)
        while len(self._processed) > self.dedupe_window:
            self._processed.popitem(last=False)

    # ── Loop ──────────────────────────────────────────────────

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> LoopStats:
        """Poll/process/pause until ``stop_event`` is set. Returns the loop counters."""
        stop_event = stop_event or self._stop_event
        logger.info("consumer_started",
                    queue=self.queue.queue_ref,
                    max_messages=self.max_messages,
                    wait_s=self.wait_seconds,
                    interval_s=self.poll_interval_seconds)

        while not stop_event.is_set():
            self.stats.ticks += 1
            attempts: list[DeliveryAttempt] = []
            try:
                attempts = await self._poll_until_stopped(stop_event)
            except QueueError as e:
                logger.warning("poll_failed", **e.log_context())
            except Exception as e:
                logger.error("poll_error", queue=self.queue.queue_ref, error=str(e), exc_info=True)

            self.stats.received += len(attempts)
            for index, attempt in enumerate(attempts):
                if stop_event.is_set():
                    logger.info("batch_abandoned",
                                queue=self.queue.queue_ref,
                                remaining=len(attempts) - index)
                    break
                try:
                    outcome = await self.process_and_ack(attempt)
                except Exception as e:
                    logger.error("process_error",
                                 queue=self.queue.queue_ref,
                                 message_id=attempt.message_id,
                                 error=str(e), exc_info=True)
                    outcome = AckOutcome.DELETE_FAILED
                self.stats.record(outcome)

            if await self.clock.wait(stop_event, self.poll_interval_seconds):
                break

        logger.info("consumer_stopped",
                    queue=self.queue.queue_ref,
                    received=self.stats.received,
                    outcomes=self.stats.outcomes)
        return self.stats

    async def start(self) -> asyncio.Task:
        """Start the loop as a background task."""
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(self._stop_event), name="consumer")
        return self._task

    async def stop(self) -> None:
        """Signal the loop and wait for the in-progress cycle to wind down."""
        self._stop_event.set()
        if self._task and not self._task.done():
            await self._task
        self._task = None
