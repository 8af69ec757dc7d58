"""
Core data models for message-relay.
These are the types shared between the queue adapters, the producer and the consumer.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    STALE_HANDLE = "stale-handle"
    MALFORMED_INPUT = "malformed-input"
    EXHAUSTED_RETRY = "exhausted-retry"
    CONFIGURATION = "configuration"


class AckOutcome(str, Enum):
    DELETED = "deleted"
    DUPLICATE = "duplicate"                  # already processed, handler skipped
    PROCESSING_FAILED = "processing_failed"  # handler raised, no delete attempted
    STALE_HANDLE = "stale_handle"
    DELETE_EXHAUSTED = "delete_exhausted"
    DELETE_REJECTED = "delete_rejected"
    DELETE_FAILED = "delete_failed"          # delete raised an unexpected error


# ──────────────────────────────────────────────────────────────
#  Message: one delivery of a queued payload
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    """
    A queued payload as returned by a receive call.

    ``message_id`` is stable across redeliveries; ``receipt_handle`` is
    reassigned by the service on every delivery and is only good for
    deleting this particular delivery.
    """
    model_config = ConfigDict(frozen=True)

    message_id: str
    payload: str
    receipt_handle: str
    receive_count: int = 1
    enqueued_at: Optional[datetime] = None


class DeliveryAttempt(BaseModel):
    """A received message plus the deadline after which its handle goes stale."""
    model_config = ConfigDict(frozen=True)

    message: Message
    visible_again_at: Optional[float] = None   # clock time, None when unknown
    received_at: float = 0.0

    @property
    def message_id(self) -> str:
        return self.message.message_id

    @property
    def receipt_handle(self) -> str:
        return self.message.receipt_handle

    @property
    def payload(self) -> str:
        return self.message.payload

    def is_expired(self, now: float) -> bool:
        if self.visible_again_at is None:
            return False
        return now >= self.visible_again_at


class LoopStats(BaseModel):
    """Counters kept by the producer and consumer loops."""
    ticks: int = 0
    sent: int = 0
    failed: int = 0
    received: int = 0
    outcomes: dict[str, int] = Field(default_factory=dict)

    def record(self, outcome: AckOutcome) -> None:
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1
