from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any

import httpx

from applyflow.config import Settings, get_settings
from applyflow.core.circuit_breaker import CircuitBreaker
from applyflow.core.retry import RetryPolicy
from applyflow.errors import CoreRejectedError, CoreServiceError, PermanentItemError, TransientError
from applyflow.types import CoreSubmissionResult, CustomizedCV

logger = logging.getLogger(__name__)


def sign_request(secret: str, timestamp_ms: int, body: str) -> str:
    message = f"{timestamp_ms}:{body}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class CoreClient:
    """Submits finished applications to the Core service.

    Every submission goes through the circuit breaker first, then the retry
    policy, then a single HTTP request. Statuses the retry policy does not
    consider retryable become ``CoreRejectedError``, which the breaker does
    not count as a failure. The retry sequence as a whole runs under
    ``worker_call_timeout_sec``; running out of time is a breaker failure.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.breaker = breaker or CircuitBreaker.from_settings(
            "core", self.settings, ignored_exceptions=(PermanentItemError,)
        )
        self.retry = retry or RetryPolicy.from_settings(self.settings)
        self._client = httpx.AsyncClient(
            base_url=self.settings.core_url,
            timeout=self.settings.core_timeout_sec,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> CoreClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def submit(
        self,
        *,
        job_external_id: str,
        user_id: str,
        customized_cv: CustomizedCV,
        cover_letter: str,
    ) -> CoreSubmissionResult:
        payload = {
            "job_external_id": job_external_id,
            "user_id": user_id,
            "customized_cv": customized_cv.model_dump(),
            "cover_letter": cover_letter,
        }

        async def attempt() -> dict[str, Any]:
            return await self._post(self.settings.core_submit_path, payload)

        async def with_retries() -> dict[str, Any]:
            deadline = self.settings.worker_call_timeout_sec
            try:
                async with asyncio.timeout(deadline):
                    return await self.retry.run(attempt, label=f"core submit job={job_external_id}")
            except CoreServiceError as exc:
                raise CoreRejectedError(exc.status_code, exc.body) from exc
            except TimeoutError as exc:
                raise TransientError(f"Core submission timed out after {deadline:g}s") from exc

        data = await self.breaker.call(with_retries)
        return CoreSubmissionResult(
            resume_id=_optional_str(data.get("resume_id") or data.get("resumeId")),
            negotiation_id=_optional_str(data.get("negotiation_id") or data.get("negotiationId")),
            raw=data,
        )

    async def health(self) -> dict[str, Any]:
        """Probe Core's health endpoint without touching the breaker. Never raises."""
        health_retry = RetryPolicy(
            max_retries=1,
            initial_delay=self.retry.initial_delay,
            max_delay=self.retry.max_delay,
            retryable_statuses=self.retry.retryable_statuses,
            sleep=self.retry.sleep,
        )

        async def attempt() -> httpx.Response:
            response = await self._client.get("/health")
            if response.status_code >= 400:
                raise CoreServiceError(response.status_code, response.text)
            return response

        try:
            response = await health_retry.run(attempt, label="core health")
        except Exception as exc:
            logger.warning("Core health check failed: %s", exc)
            return {"healthy": False, "error": str(exc)}
        return {"healthy": True, "status_code": response.status_code}

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload, separators=(",", ":"), default=str)
        timestamp_ms = int(time.time() * 1000)
        headers = {
            "Content-Type": "application/json",
            "X-Core-Secret": self.settings.orchestrator_secret,
            "X-Request-ID": str(uuid.uuid4()),
            "X-Request-Timestamp": str(timestamp_ms),
            "X-Request-Signature": sign_request(self.settings.orchestrator_secret, timestamp_ms, body),
        }
        response = await self._client.post(path, content=body, headers=headers)
        if response.status_code >= 400:
            raise CoreServiceError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
