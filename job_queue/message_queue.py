"""
Queue Service — the contract the producer and consumer talk to, plus backends.

Contract (one instance is bound to one queue reference):
  send(payload)                        → message_id
  receive(max_messages, wait_seconds)  → [Message]   (long poll, may be empty)
  delete(receipt_handle)               → None, or StaleHandleError / QueueError

Semantics expected from every backend:
  - at-least-once delivery
  - per-message visibility timeout: a received message is hidden until it is
    deleted or the timeout elapses, then it becomes receivable again
  - a fresh receipt handle per delivery; only the current one deletes

Backends:
  InMemoryQueueService  — single process, dev/test, clock-driven timeouts
  RedisQueueService     — Redis Streams + consumer group, reclaim via XAUTOCLAIM
  SqsQueueService       — AWS SQS (job_queue.sqs_queue)
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from job_queue.clock import Clock, SystemClock
from job_queue.errors import (
    MalformedInputError, QueueConfigurationError, StaleHandleError,
    TransientQueueError,
)
from models.schemas import Message

logger = structlog.get_logger()

MAX_BATCH_SIZE = 10


def validate_receive_args(max_messages: int, wait_seconds: float, queue_ref: str = "") -> None:
    if not 1 <= max_messages <= MAX_BATCH_SIZE:
        raise MalformedInputError(
            f"max_messages must be between 1 and {MAX_BATCH_SIZE}, got {max_messages}",
            queue_ref=queue_ref,
        )
    if wait_seconds < 0:
        raise MalformedInputError(
            f"wait_seconds must be >= 0, got {wait_seconds}", queue_ref=queue_ref,
        )


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueService(ABC):
    """Abstract queue client bound to a single queue reference."""

    queue_ref: str = ""
    # Seconds a received message stays hidden; None when the service decides.
    visibility_timeout: Optional[float] = None

    async def connect(self):
        """Establish connection to the queue backend."""

    async def close(self):
        """Release the connection."""

    async def __aenter__(self) -> QueueService:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @abstractmethod
    async def send(self, payload: str) -> str:
        """Enqueue a payload and return the service-assigned message id."""
        ...

    @abstractmethod
    async def receive(self, max_messages: int = 1, wait_seconds: float = 0) -> list[Message]:
        """
        Receive up to ``max_messages``, waiting up to ``wait_seconds`` for at
        least one to become available. An empty list is the idle case.
        """
        ...

    @abstractmethod
    async def delete(self, receipt_handle: str) -> None:
        """Acknowledge the delivery identified by ``receipt_handle``."""
        ...

    @abstractmethod
    async def queue_length(self) -> int:
        """Approximate number of messages stored, visible or in flight."""
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _StoredMessage:
    message_id: str
    payload: str
    enqueued_at: datetime
    receive_count: int = 0
    receipt_handle: Optional[str] = None
    invisible_until: float = 0.0


class InMemoryQueueService(QueueService):
    """
    Development/test queue honouring visibility timeouts and handle rotation.
    Single-process only, no persistence. All timing goes through ``clock``
    so a fake clock makes timeouts deterministic.
    """

    def __init__(
        self,
        queue_ref: str = "memory://default",
        visibility_timeout: float = 30.0,
        clock: Optional[Clock] = None,
    ):
        self.queue_ref = queue_ref
        self.visibility_timeout = visibility_timeout
        self.clock = clock or SystemClock()
        self._messages: dict[str, _StoredMessage] = {}   # insertion order is FIFO
        self._handles: dict[str, str] = {}                # current handle → message_id
        self._arrived = asyncio.Event()

    async def connect(self):
        logger.info("inmemory_queue_connected", queue=self.queue_ref)

    async def send(self, payload: str) -> str:
        if not isinstance(payload, str):
            raise MalformedInputError(
                f"payload must be text, got {type(payload).__name__}", queue_ref=self.queue_ref,
            )
        message_id = str(uuid.uuid4())
        self._messages[message_id] = _StoredMessage(
            message_id=message_id,
            payload=payload,
            enqueued_at=datetime.now(timezone.utc),
        )
        self._arrived.set()
        logger.debug("message_stored", queue=self.queue_ref, message_id=message_id)
        return message_id

    async def receive(self, max_messages: int = 1, wait_seconds: float = 0) -> list[Message]:
        validate_receive_args(max_messages, wait_seconds, self.queue_ref)
        deadline = self.clock.now() + wait_seconds

        while True:
            batch = self._claim(max_messages)
            if batch:
                return batch

            now = self.clock.now()
            remaining = deadline - now
            if remaining <= 0:
                return []

            # Wake on a new send or when the next in-flight message expires.
            self._arrived.clear()
            timeout = remaining
            next_visible = self._next_visibility_change()
            if next_visible is not None:
                timeout = min(timeout, next_visible - now)
            await self.clock.wait(self._arrived, timeout)

    async def delete(self, receipt_handle: str) -> None:
        message_id = self._handles.get(receipt_handle)
        if message_id is None:
            raise StaleHandleError("receipt handle is not current", queue_ref=self.queue_ref)

        stored = self._messages[message_id]
        if stored.invisible_until <= self.clock.now():
            self._release(stored)
            raise StaleHandleError(
                "visibility timeout elapsed before delete",
                queue_ref=self.queue_ref, message_id=message_id,
            )

        del self._handles[receipt_handle]
        del self._messages[message_id]
        logger.debug("message_removed", queue=self.queue_ref, message_id=message_id)

    async def queue_length(self) -> int:
        return len(self._messages)

    def in_flight_count(self) -> int:
        now = self.clock.now()
        return sum(1 for m in self._messages.values() if m.invisible_until > now)

    def _claim(self, max_messages: int) -> list[Message]:
        now = self.clock.now()
        batch = []
        for stored in self._messages.values():
            if len(batch) >= max_messages:
                break
            if stored.invisible_until > now:
                continue
            self._release(stored)
            handle = uuid.uuid4().hex
            stored.receipt_handle = handle
            stored.receive_count += 1
            stored.invisible_until = now + self.visibility_timeout
            self._handles[handle] = stored.message_id
            batch.append(Message(
                message_id=stored.message_id,
                payload=stored.payload,
                receipt_handle=handle,
                receive_count=stored.receive_count,
                enqueued_at=stored.enqueued_at,
            ))
        return batch

    def _release(self, stored: _StoredMessage) -> None:
        """Invalidate the previous delivery's handle."""
        if stored.receipt_handle is not None:
            self._handles.pop(stored.receipt_handle, None)
            stored.receipt_handle = None

    def _next_visibility_change(self) -> Optional[float]:
        now = self.clock.now()
        pending = [m.invisible_until for m in self._messages.values() if m.invisible_until > now]
        return min(pending) if pending else None


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

# KEYS: stream, handles hash, counts hash
# ARGV: entry id, receipt handle, group, visibility timeout ms
_DELETE_SCRIPT = """
local current = redis.call('HGET', KEYS[2], ARGV[1])
if current ~= ARGV[2] then return 0 end
local pending = redis.call('XPENDING', KEYS[1], ARGV[3], ARGV[1], ARGV[1], 1)
if #pending == 0 then return 0 end
if tonumber(pending[1][3]) >= tonumber(ARGV[4]) then return 0 end
redis.call('XACK', KEYS[1], ARGV[3], ARGV[1])
redis.call('XDEL', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
return 1
"""


class RedisQueueService(QueueService):
    """
    Queue backed by a Redis Stream with a consumer group.

    - send → XADD; the stream entry id is the message id
    - receive → XAUTOCLAIM entries idle longer than the visibility timeout,
      then XREADGROUP new ones (blocking for the long poll)
    - delete → Lua script: check handle is current and not expired, XACK + XDEL
    Receipt handles are ``<entry id>:<random>`` and rotate on every delivery.
    """

    def __init__(
        self,
        stream: str,
        redis_url: str = "redis://localhost:6379",
        consumer_group: str = "relay-workers",
        consumer_name: str = "",
        visibility_timeout: float = 30.0,
        client: Any = None,
    ):
        if not stream:
            raise QueueConfigurationError("Redis stream name is required")
        self.queue_ref = stream
        self._redis_url = redis_url
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self.visibility_timeout = visibility_timeout
        self._redis = client
        self._delete_script = None
        self._reclaim_cursor = "0-0"
        self._handles_key = f"{stream}:handles"
        self._counts_key = f"{stream}:receive_counts"

    @property
    def _visibility_ms(self) -> int:
        return int(self.visibility_timeout * 1000)

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        await self._guard(self._redis.ping())
        await self._ensure_group()
        self._delete_script = self._redis.register_script(_DELETE_SCRIPT)
        logger.info("redis_queue_connected",
                    queue=self.queue_ref,
                    group=self.consumer_group,
                    consumer=self.consumer_name)

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _ensure_group(self):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(
                self.queue_ref, self.consumer_group, id="0", mkstream=True,
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise MalformedInputError(str(e), queue_ref=self.queue_ref) from e

    async def _guard(self, awaitable, message_id: Optional[str] = None):
        """Await a redis call, translating client errors into queue errors."""
        from redis.exceptions import ConnectionError, ResponseError, TimeoutError
        try:
            return await awaitable
        except (ConnectionError, TimeoutError) as e:
            raise TransientQueueError(str(e), queue_ref=self.queue_ref, message_id=message_id) from e
        except ResponseError as e:
            raise MalformedInputError(str(e), queue_ref=self.queue_ref, message_id=message_id) from e

    def _require_connection(self):
        if self._redis is None:
            raise QueueConfigurationError("RedisQueueService used before connect()", queue_ref=self.queue_ref)

    async def send(self, payload: str) -> str:
        self._require_connection()
        if not isinstance(payload, str):
            raise MalformedInputError(
                f"payload must be text, got {type(payload).__name__}", queue_ref=self.queue_ref,
            )
        message_id = await self._guard(self._redis.xadd(self.queue_ref, {"payload": payload}))
        logger.debug("stream_entry_added", queue=self.queue_ref, message_id=message_id)
        return message_id

    async def receive(self, max_messages: int = 1, wait_seconds: float = 0) -> list[Message]:
        self._require_connection()
        validate_receive_args(max_messages, wait_seconds, self.queue_ref)

        entries = await self._reclaim_expired(max_messages)

        if len(entries) < max_messages:
            # BLOCK 0 means "forever" to Redis, so no wait means no BLOCK at all.
            block_ms = int(wait_seconds * 1000) if not entries and wait_seconds > 0 else None
            response = await self._guard(self._redis.xreadgroup(
                groupname=self.consumer_group,
                consumername=self.consumer_name,
                streams={self.queue_ref: ">"},
                count=max_messages - len(entries),
                block=block_ms,
            ))
            for _stream_name, stream_messages in response or []:
                entries.extend(stream_messages)

        messages = []
        for entry_id, fields in entries:
            messages.append(await self._deliver(entry_id, fields))
        return messages

    async def _reclaim_expired(self, max_messages: int) -> list[tuple[str, dict]]:
        """
        Claim entries idle past the visibility timeout.

        XAUTOCLAIM only scans a slice of the pending list per call, so the
        cursor is followed to the end of the list and kept between receives.
        """
        entries: list[tuple[str, dict]] = []
        while len(entries) < max_messages:
            result = await self._guard(self._redis.xautoclaim(
                self.queue_ref,
                self.consumer_group,
                self.consumer_name,
                min_idle_time=self._visibility_ms,
                start_id=self._reclaim_cursor,
                count=max_messages - len(entries),
            ))
            cursor = result[0] if result else "0-0"
            claimed = result[1] if result and len(result) > 1 else []
            # Entries trimmed from the stream come back without fields.
            entries.extend((entry_id, fields) for entry_id, fields in claimed if fields)
            self._reclaim_cursor = cursor
            if cursor in ("0-0", b"0-0"):
                break
        return entries

    async def _deliver(self, entry_id: str, fields: dict[str, Any]) -> Message:
        handle = f"{entry_id}:{uuid.uuid4().hex}"
        await self._guard(self._redis.hset(self._handles_key, entry_id, handle), entry_id)
        count = await self._guard(self._redis.hincrby(self._counts_key, entry_id, 1), entry_id)
        millis = int(entry_id.split("-", 1)[0])
        return Message(
            message_id=entry_id,
            payload=fields.get("payload", ""),
            receipt_handle=handle,
            receive_count=int(count),
            enqueued_at=datetime.fromtimestamp(millis / 1000, tz=timezone.utc),
        )

    async def delete(self, receipt_handle: str) -> None:
        self._require_connection()
        entry_id, sep, _ = receipt_handle.partition(":")
        if not sep:
            raise StaleHandleError("unrecognised receipt handle", queue_ref=self.queue_ref)

        deleted = await self._guard(
            self._delete_script(
                keys=[self.queue_ref, self._handles_key, self._counts_key],
                args=[entry_id, receipt_handle, self.consumer_group, self._visibility_ms],
            ),
            entry_id,
        )
        if not deleted:
            raise StaleHandleError(
                "receipt handle is not current", queue_ref=self.queue_ref, message_id=entry_id,
            )

    async def queue_length(self) -> int:
        self._require_connection()
        return await self._guard(self._redis.xlen(self.queue_ref))


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_queue_service(queue_config, clock: Optional[Clock] = None) -> QueueService:
    """
    Build the backend named by ``queue_config.backend``.

    Returns a fresh, unconnected instance; the caller owns its lifetime
    (``async with service: ...``).
    """
    backend = queue_config.backend

    if backend == "memory":
        return InMemoryQueueService(
            queue_ref=queue_config.queue_url or "memory://default",
            visibility_timeout=queue_config.visibility_timeout,
            clock=clock,
        )
    if backend == "redis":
        return RedisQueueService(
            stream=queue_config.queue_url,
            redis_url=queue_config.redis_url,
            consumer_group=queue_config.consumer_group,
            visibility_timeout=queue_config.visibility_timeout,
        )
    if backend == "sqs":
        from job_queue.sqs_queue import SqsQueueService
        return SqsQueueService(
            queue_url=queue_config.queue_url,
            region_name=queue_config.region,
            endpoint_url=queue_config.endpoint_url or None,
            visibility_timeout=queue_config.visibility_timeout,
        )

    raise QueueConfigurationError(f"Unsupported queue backend: {backend}")
