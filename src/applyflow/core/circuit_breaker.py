"""Circuit breaker guarding calls to a single downstream dependency.

States:
    CLOSED: calls pass through; failures are counted.
    OPEN: calls fail fast with ``CircuitOpenError`` until ``timeout`` elapses.
    HALF_OPEN: trial calls; one failure reopens, ``success_threshold``
        successes close the circuit again.

One instance is shared by every call to the dependency within a process, so
state changes happen under a lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from enum import Enum
from typing import Any, TypeVar

from applyflow.config import Settings
from applyflow.db.base import utcnow
from applyflow.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        reset_timeout: float | None = 120.0,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.reset_timeout = reset_timeout
        self.ignored_exceptions = ignored_exceptions
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt = 0.0
        self._last_failure_time: float | None = None

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: Settings,
        *,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
    ) -> CircuitBreaker:
        return cls(
            name,
            failure_threshold=settings.breaker_failure_threshold,
            success_threshold=settings.breaker_success_threshold,
            timeout=settings.breaker_timeout_sec,
            reset_timeout=settings.breaker_reset_timeout_sec,
            ignored_exceptions=ignored_exceptions,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self.before_call()
        try:
            result = await operation()
        except self.ignored_exceptions:
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def before_call(self) -> None:
        with self._lock:
            if self._state != CircuitState.OPEN:
                return

            now = self._clock()
            if now < self._next_attempt:
                logger.warning(
                    "Circuit breaker %s is OPEN failures=%s retry_in=%.1fs",
                    self.name,
                    self._failure_count,
                    self._next_attempt - now,
                )
                raise CircuitOpenError(
                    self.name,
                    next_attempt=utcnow() + timedelta(seconds=self._next_attempt - now),
                )

            self._state = CircuitState.HALF_OPEN
            self._success_count = 0
            logger.info("Circuit breaker %s transitioning to HALF_OPEN", self.name)

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._close()
            elif self._state == CircuitState.CLOSED and self._failure_count:
                if (
                    self.reset_timeout is not None
                    and self._last_failure_time is not None
                    and self._clock() - self._last_failure_time > self.reset_timeout
                ):
                    self._failure_count = 0
                    logger.debug("Circuit breaker %s failure count reset", self.name)

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            logger.warning(
                "Circuit breaker %s recorded failure state=%s failures=%s threshold=%s",
                self.name,
                self._state.value,
                self._failure_count,
                self.failure_threshold,
            )

            if self._state == CircuitState.HALF_OPEN:
                self._open()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._next_attempt = self._clock()
            self._last_failure_time = None
        logger.info("Circuit breaker %s manually reset", self.name)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "retry_in_sec": max(0.0, self._next_attempt - now) if self._state == CircuitState.OPEN else 0.0,
                "is_available": self._state != CircuitState.OPEN or now >= self._next_attempt,
            }

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._next_attempt = self._clock() + self.timeout
        logger.error(
            "Circuit breaker %s OPENED failures=%s timeout=%.1fs",
            self.name,
            self._failure_count,
            self.timeout,
        )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        logger.info("Circuit breaker %s CLOSED (service recovered)", self.name)
