"""
Queue client exceptions.

Every error carries an ``error_class`` so the loops can log and count
failures without inspecting adapter-specific exception types.
"""
from __future__ import annotations

from typing import Optional

from models.schemas import ErrorClass


class QueueError(Exception):
    """Base exception for queue client errors."""

    error_class: ErrorClass = ErrorClass.TRANSIENT

    def __init__(self, message: str, queue_ref: str = "", message_id: Optional[str] = None):
        super().__init__(message)
        self.queue_ref = queue_ref
        self.message_id = message_id

    def log_context(self) -> dict[str, str]:
        ctx = {"error_class": self.error_class.value, "error": str(self)}
        if self.queue_ref:
            ctx["queue"] = self.queue_ref
        if self.message_id:
            ctx["message_id"] = self.message_id
        return ctx


class TransientQueueError(QueueError):
    """Network or service unavailability; safe to retry."""

    error_class = ErrorClass.TRANSIENT


class StaleHandleError(QueueError):
    """The receipt handle expired or was already consumed."""

    error_class = ErrorClass.STALE_HANDLE


class MalformedInputError(QueueError):
    """Invalid queue reference or payload rejected deterministically."""

    error_class = ErrorClass.MALFORMED_INPUT


class DeleteRetriesExhausted(QueueError):
    """Delete kept failing transiently until the attempt cap was reached."""

    error_class = ErrorClass.EXHAUSTED_RETRY


class QueueConfigurationError(QueueError):
    """Raised when queue configuration is invalid or missing."""

    error_class = ErrorClass.CONFIGURATION
