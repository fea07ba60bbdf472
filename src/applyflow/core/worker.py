from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from applyflow.clients.core import CoreClient
from applyflow.config import Settings, get_settings
from applyflow.core.cv_store import CVStore, DatabaseCVStore
from applyflow.core.rate_limiter import RateLimiter
from applyflow.db.base import utcnow
from applyflow.db.models import QUEUE_CANCELLED, QUEUE_FAILED, QueueItem
from applyflow.db.repositories import Repository
from applyflow.errors import (
    CircuitOpenError,
    PermanentItemError,
    RetriesExhaustedError,
    TransientError,
)
from applyflow.llm.customizer import AICustomizer

logger = logging.getLogger(__name__)

T = TypeVar("T")

OUTCOME_SUBMITTED = "submitted"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_SKIPPED = "skipped"


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, RetriesExhaustedError):
        return str(exc.last_error) or type(exc.last_error).__name__
    return str(exc) or type(exc).__name__


class QueueWorker:
    """Polls the application queue and drives each claimed item to an outcome.

    Items of one user are processed one after another so two submissions for
    the same user never race past the rate check; different users may run
    concurrently up to ``worker_concurrency``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: sessionmaker | Callable[[], Session] | None = None,
        core_client: CoreClient | None = None,
        customizer: Any = None,
        cv_store_factory: Callable[[Session], CVStore] = DatabaseCVStore,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.settings = settings or get_settings()
        if session_factory is None:
            from applyflow.db.session import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self._owns_core_client = core_client is None
        self.core_client = core_client or CoreClient(self.settings)
        self.customizer = customizer or AICustomizer(self.settings)
        self.cv_store_factory = cv_store_factory
        self.clock = clock
        self._sleep = sleep
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        if self._running:
            logger.info("Worker stop requested")
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def aclose(self) -> None:
        if self._owns_core_client:
            await self.core_client.aclose()

    async def run_forever(self) -> None:
        poll = self.settings.worker_poll_interval_sec
        error_delay = poll
        self._stop_event = asyncio.Event()
        self._running = True
        logger.info(
            "Worker started poll_interval=%.1fs batch_size=%s concurrency=%s",
            poll,
            self.settings.worker_batch_size,
            self.settings.worker_concurrency,
        )
        try:
            while self._running:
                try:
                    processed = await self.run_once()
                except Exception:
                    error_delay = min(error_delay * 2, self.settings.worker_max_error_backoff_sec)
                    logger.exception("Worker cycle failed; next poll in %.1fs", error_delay)
                    await self._pause(error_delay)
                    continue

                error_delay = poll
                if not processed:
                    await self._pause(poll)
        finally:
            self._running = False
            logger.info("Worker stopped")

    async def run_once(self) -> int:
        """Claim one batch and process it. Returns the number of items claimed."""
        with self.session_factory() as session:
            items = Repository(session).claim_batch(
                self.settings.worker_batch_size,
                now=self.clock(),
                lease=timedelta(minutes=self.settings.worker_claim_lease_min),
            )

        if not items:
            return 0

        logger.info("Claimed %s queue items", len(items))
        await self.process_batch(items)
        return len(items)

    async def process_batch(self, items: list[QueueItem]) -> dict[int, str]:
        outcomes: dict[int, str] = {}
        concurrency = self.settings.worker_concurrency

        if concurrency <= 1:
            for item in items:
                outcomes[item.id] = await self._process_guarded(item)
            return outcomes

        by_user: dict[str, list[QueueItem]] = {}
        for item in items:
            by_user.setdefault(item.user_id, []).append(item)

        semaphore = asyncio.Semaphore(concurrency)

        async def run_user(user_items: list[QueueItem]) -> None:
            async with semaphore:
                for user_item in user_items:
                    outcomes[user_item.id] = await self._process_guarded(user_item)

        await asyncio.gather(*(run_user(group) for group in by_user.values()))
        return outcomes

    async def _process_guarded(self, item: QueueItem) -> str:
        try:
            return await self.process_item(item)
        except Exception as exc:
            logger.exception("Unexpected error processing item_id=%s job=%s", item.id, item.job_external_id)
            return self._release(item, exc)

    def _release(self, item: QueueItem, exc: Exception) -> str:
        """Record a failed attempt in a fresh session, or at least hand the claim back."""
        try:
            with self.session_factory() as session:
                return self._record_failure(Repository(session), item, exc)
        except Exception:
            logger.exception("Could not record failure for item_id=%s; releasing claim", item.id)

        try:
            with self.session_factory() as session:
                Repository(session).release_claim(item.id, error=describe_error(exc), now=self.clock())
        except Exception:
            logger.exception("Could not release item_id=%s; its claim lease will expire", item.id)
        return OUTCOME_RETRY

    async def process_item(self, item: QueueItem) -> str:
        with self.session_factory() as session:
            repo = Repository(session)
            limiter = RateLimiter.from_settings(repo, self.settings, clock=self.clock)

            if not limiter.can_submit(item.user_id):
                repo.reschedule_rate_limited(
                    item.id,
                    cooldown=timedelta(minutes=self.settings.rate_limit_cooldown_min),
                    now=self.clock(),
                )
                logger.info(
                    "Rate limited item_id=%s user_id=%s; rescheduled in %s min",
                    item.id,
                    item.user_id,
                    self.settings.rate_limit_cooldown_min,
                )
                return OUTCOME_RATE_LIMITED

            try:
                result, cover_letter = await self._submit(item)
            except PermanentItemError as exc:
                repo.mark_permanently_failed(item.id, error=describe_error(exc), now=self.clock())
                logger.error("Permanent failure item_id=%s job=%s: %s", item.id, item.job_external_id, exc)
                return OUTCOME_FAILED
            except CircuitOpenError as exc:
                logger.warning("Circuit open; deferring item_id=%s job=%s", item.id, item.job_external_id)
                return self._record_failure(repo, item, exc)
            except Exception as exc:
                logger.warning("Attempt failed item_id=%s job=%s: %s", item.id, item.job_external_id, exc)
                return self._record_failure(repo, item, exc)

            application = repo.mark_submitted(
                item.id, result=result, cover_letter=cover_letter, now=self.clock()
            )
            if application is None:
                return OUTCOME_SKIPPED
            logger.info(
                "Submitted item_id=%s user_id=%s job=%s application_id=%s",
                item.id,
                item.user_id,
                item.job_external_id,
                application.id,
            )
            return OUTCOME_SUBMITTED

    async def _submit(self, item: QueueItem):
        cv = await self._bounded(asyncio.to_thread(self._load_cv, item), "CV fetch")
        if not cv:
            raise PermanentItemError(f"CV {item.cv_id} not found or not parsed")

        payload = item.payload or {}
        description = str(payload.get("job_description") or "")
        company = str(payload.get("company") or "")

        customized = await self._bounded(self.customizer.customize_cv(cv, description), "CV customization")
        cover_letter = await self._bounded(
            self.customizer.generate_cover_letter(cv, description, company), "cover letter"
        )
        # CoreClient applies its own deadline inside the breaker.
        result = await self.core_client.submit(
            job_external_id=item.job_external_id,
            user_id=item.user_id,
            customized_cv=customized,
            cover_letter=cover_letter,
        )
        return result, cover_letter

    def _load_cv(self, item: QueueItem) -> dict | None:
        # Runs in a worker thread, so it gets a session of its own.
        with self.session_factory() as session:
            return self.cv_store_factory(session).get_cv(item.user_id, item.cv_id)

    def _record_failure(self, repo: Repository, item: QueueItem, exc: BaseException) -> str:
        updated = repo.record_attempt_failure(
            item.id,
            error=describe_error(exc),
            max_attempts=self.settings.worker_max_attempts,
            backoff_cap_min=self.settings.worker_backoff_cap_min,
            now=self.clock(),
        )
        if updated is None:
            return OUTCOME_SKIPPED
        if updated.status == QUEUE_FAILED:
            return OUTCOME_FAILED
        if updated.status == QUEUE_CANCELLED:
            logger.info("Item %s belongs to a cancelled workflow; not rescheduled", item.id)
            return OUTCOME_CANCELLED
        logger.info(
            "Rescheduled item_id=%s attempts=%s status=%s next_run_at=%s",
            item.id,
            updated.attempts,
            updated.status,
            updated.next_run_at.isoformat(),
        )
        return OUTCOME_RETRY

    async def _bounded(self, awaitable: Awaitable[T], label: str) -> T:
        timeout = self.settings.worker_call_timeout_sec
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"{label} timed out after {timeout:g}s") from exc

    async def _pause(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            return
        if self._stop_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
