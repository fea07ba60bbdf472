"""Failure taxonomy shared by the queue worker and its collaborators.

``PermanentItemError`` ends a queue item immediately. ``TransientError``
subclasses count against the item's attempt budget and are rescheduled with
backoff. Rate limiting is not an error at all: the worker reschedules the item
without touching its attempt counter.
"""

from __future__ import annotations

from datetime import datetime


class ApplyFlowError(Exception):
    pass


class PermanentItemError(ApplyFlowError):
    """The item itself is broken (missing CV, rejected payload); retrying will not help."""


class TransientError(ApplyFlowError):
    """A downstream dependency failed; the item may succeed on a later attempt."""


class CoreServiceError(ApplyFlowError):
    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"Core responded with HTTP {status_code}: {body[:200]}".rstrip(": "))
        self.status_code = status_code
        self.body = body


class CoreRejectedError(PermanentItemError):
    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"Core rejected submission with HTTP {status_code}: {body[:200]}".rstrip(": "))
        self.status_code = status_code
        self.body = body


class RetriesExhaustedError(TransientError):
    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(TransientError):
    def __init__(self, name: str, next_attempt: datetime | None = None):
        message = f"Circuit breaker for {name} is OPEN. Service unavailable."
        super().__init__(message)
        self.name = name
        self.next_attempt = next_attempt


class CustomizationError(TransientError):
    """The AI backend could not produce a customized CV or cover letter."""
