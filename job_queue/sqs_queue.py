"""
SQS Queue Service.

boto3 is synchronous, so every call runs in a worker thread via
asyncio.to_thread. A cancelled caller stops waiting immediately; the
underlying HTTP call finishes or times out on its own.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from job_queue.errors import (
    MalformedInputError, QueueConfigurationError, QueueError, StaleHandleError,
    TransientQueueError,
)
from job_queue.message_queue import QueueService, validate_receive_args
from models.schemas import Message

logger = structlog.get_logger()

STALE_HANDLE_CODES = {"ReceiptHandleIsInvalid", "MessageNotInflight"}
MALFORMED_CODES = {
    "NonExistentQueue", "QueueDoesNotExist", "InvalidMessageContents",
    "InvalidAddress", "InvalidParameterValue", "InvalidAttributeName",
    "UnsupportedOperation",
}
SQS_MAX_WAIT_SECONDS = 20


def _short_code(code: str) -> str:
    # "AWS.SimpleQueueService.NonExistentQueue" → "NonExistentQueue"
    return code.rsplit(".", 1)[-1]


def classify_client_error(
    error: ClientError,
    queue_ref: str,
    message_id: Optional[str] = None,
    deleting: bool = False,
) -> QueueError:
    """Map an SQS ClientError onto the queue error taxonomy."""
    err = error.response.get("Error", {})
    code = _short_code(err.get("Code", ""))
    text = err.get("Message", "") or str(error)

    if code in STALE_HANDLE_CODES:
        return StaleHandleError(text, queue_ref=queue_ref, message_id=message_id)
    if deleting and code == "InvalidParameterValue" and "receipt handle" in text.lower():
        return StaleHandleError(text, queue_ref=queue_ref, message_id=message_id)
    if code in MALFORMED_CODES:
        return MalformedInputError(f"{code}: {text}", queue_ref=queue_ref, message_id=message_id)
    return TransientQueueError(f"{code}: {text}", queue_ref=queue_ref, message_id=message_id)


class SqsQueueService(QueueService):
    """
    SQS-backed queue client.

    Example:
        ```python
        async with SqsQueueService(queue_url, region_name="us-east-1") as queue:
            message_id = await queue.send("hello")
        ```
    """

    def __init__(
        self,
        queue_url: str,
        region_name: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        visibility_timeout: Optional[float] = None,
        client: Any = None,
    ):
        if not queue_url:
            raise QueueConfigurationError("Queue URL is required")
        self.queue_ref = queue_url
        self.region_name = region_name
        self.endpoint_url = endpoint_url
        self.visibility_timeout = visibility_timeout
        self._client = client

    @property
    def client(self):
        """Lazy-loaded SQS client."""
        if self._client is None:
            self._client = boto3.client(
                "sqs",
                region_name=self.region_name,
                endpoint_url=self.endpoint_url,
                config=Config(
                    read_timeout=SQS_MAX_WAIT_SECONDS + 10,   # longer than a long poll
                    connect_timeout=3,
                    retries={"max_attempts": 2},
                ),
            )
        return self._client

    async def connect(self):
        # Creating the client resolves credentials and region eagerly.
        _ = self.client
        logger.info("sqs_queue_connected", queue=self.queue_ref, region=self.region_name)

    async def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    async def _call(
        self,
        fn: Callable[..., dict[str, Any]],
        message_id: Optional[str] = None,
        deleting: bool = False,
        **kwargs,
    ) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except ClientError as e:
            raise classify_client_error(e, self.queue_ref, message_id, deleting) from e
        except BotoCoreError as e:
            raise TransientQueueError(str(e), queue_ref=self.queue_ref, message_id=message_id) from e

    async def send(self, payload: str) -> str:
        if not isinstance(payload, str) or not payload:
            raise MalformedInputError("payload must be non-empty text", queue_ref=self.queue_ref)
        response = await self._call(
            self.client.send_message,
            QueueUrl=self.queue_ref,
            MessageBody=payload,
        )
        return response["MessageId"]

    async def receive(self, max_messages: int = 1, wait_seconds: float = 0) -> list[Message]:
        validate_receive_args(max_messages, wait_seconds, self.queue_ref)
        params = {
            "QueueUrl": self.queue_ref,
            "MaxNumberOfMessages": max_messages,
            "WaitTimeSeconds": min(int(wait_seconds), SQS_MAX_WAIT_SECONDS),
            "AttributeNames": ["ApproximateReceiveCount", "SentTimestamp"],
        }
        if self.visibility_timeout is not None:
            params["VisibilityTimeout"] = int(self.visibility_timeout)

        response = await self._call(self.client.receive_message, **params)
        return [self._to_message(raw) for raw in response.get("Messages", [])]

    @staticmethod
    def _to_message(raw: dict[str, Any]) -> Message:
        attributes = raw.get("Attributes", {})
        enqueued_at = None
        if "SentTimestamp" in attributes:
            enqueued_at = datetime.fromtimestamp(
                int(attributes["SentTimestamp"]) / 1000, tz=timezone.utc,
            )
        return Message(
            message_id=raw.get("MessageId", "unknown"),
            payload=raw.get("Body", ""),
            receipt_handle=raw.get("ReceiptHandle", ""),
            receive_count=int(attributes.get("ApproximateReceiveCount", 1)),
            enqueued_at=enqueued_at,
        )

    async def delete(self, receipt_handle: str) -> None:
        if not receipt_handle:
            raise StaleHandleError("empty receipt handle", queue_ref=self.queue_ref)
        await self._call(
            self.client.delete_message,
            deleting=True,
            QueueUrl=self.queue_ref,
            ReceiptHandle=receipt_handle,
        )

    async def queue_length(self) -> int:
        response = await self._call(
            self.client.get_queue_attributes,
            QueueUrl=self.queue_ref,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attributes = response.get("Attributes", {})
        return (int(attributes.get("ApproximateNumberOfMessages", 0))
                + int(attributes.get("ApproximateNumberOfMessagesNotVisible", 0)))
