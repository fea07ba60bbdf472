"""Retry policy for calls to downstream services.

Delay before retry ``n`` (1-based) is ``initial_delay * 2 ** (n - 1)`` capped at
``max_delay`` when exponential backoff is on, otherwise a flat ``initial_delay``.
Only network-level failures and the configured HTTP statuses are retried; any
other 4xx is a caller error and surfaces immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import httpx

from applyflow.config import Settings
from applyflow.errors import CoreServiceError, RetriesExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    exponential_backoff: bool = True
    retryable_statuses: frozenset[int] = DEFAULT_RETRYABLE_STATUSES
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retries=settings.core_max_retries,
            initial_delay=settings.core_retry_initial_delay_sec,
            max_delay=settings.core_retry_max_delay_sec,
            exponential_backoff=settings.core_retry_exponential,
            retryable_statuses=frozenset(settings.retryable_status_set),
        )

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        if not self.exponential_backoff:
            return self.initial_delay
        return min(self.initial_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, CoreServiceError):
            return error.status_code in self.retryable_statuses
        return isinstance(error, NETWORK_ERRORS)

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        """Run ``operation`` up to ``max_retries + 1`` times.

        Non-retryable errors propagate unchanged on the first occurrence.
        Running out of retries raises ``RetriesExhaustedError`` chained to the
        last failure.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                if not self.is_retryable(exc):
                    raise
                if attempt > self.max_retries:
                    raise RetriesExhaustedError(attempt, exc) from exc

                delay = self.delay_for(attempt)
                logger.warning(
                    "Retrying %s attempt=%s delay=%.2fs error=%s", label, attempt, delay, exc
                )
                await self.sleep(delay)
