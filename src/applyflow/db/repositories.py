from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from applyflow.db.base import utcnow
from applyflow.db.models import (
    APPLICATION_FAILED,
    APPLICATION_SUBMITTED,
    CLAIMABLE_STATUSES,
    CV,
    QUEUE_CANCELLED,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    QUEUE_RATE_LIMITED,
    QUEUE_SUBMITTED,
    WORKFLOW_ACTIVE,
    WORKFLOW_CANCELLED,
    Application,
    Job,
    QueueItem,
    Workflow,
)
from applyflow.types import CoreSubmissionResult, EnqueueResult

logger = logging.getLogger(__name__)

RATE_LIMITED_REASON = "rate_limited"
CLAIM_EXPIRED_REASON = "claim_expired"


def backoff_minutes(attempts: int, cap: int = 60) -> int:
    return min(2**attempts, cap)


class Repository:
    def __init__(self, session: Session):
        self.session = session

    # CV and job rows are written upstream; these cover seeding from the CLI.

    def create_cv(self, *, user_id: str, title: str = "", parsed_data: dict | None = None) -> CV:
        cv = CV(user_id=user_id, title=title, parsed_data=parsed_data)
        self.session.add(cv)
        self.session.commit()
        self.session.refresh(cv)
        return cv

    def get_cv(self, cv_id: int) -> CV | None:
        return self.session.get(CV, cv_id)

    def create_job(
        self,
        *,
        external_id: str,
        title: str = "",
        company: str = "",
        description: str = "",
        url: str = "",
        search_context: dict | None = None,
    ) -> Job:
        job = Job(
            external_id=external_id,
            title=title,
            company=company,
            description=description,
            url=url,
            search_context=search_context or {},
        )
        self.session.add(job)
        self.session.commit()
        self.session.refresh(job)
        return job

    def list_jobs(self, limit: int = 50) -> list[Job]:
        statement = select(Job).order_by(Job.created_at.desc(), Job.id.desc()).limit(limit)
        return list(self.session.scalars(statement).all())

    def enqueue_jobs(
        self,
        *,
        user_id: str,
        cv_id: int,
        job_ids: list[int],
        priority: int = 0,
        now: datetime | None = None,
    ) -> EnqueueResult:
        now = now or utcnow()
        cv = self.session.get(CV, cv_id)
        if cv is None or cv.user_id != user_id:
            raise ValueError(f"cv {cv_id} not found for user {user_id}")

        jobs = list(self.session.scalars(select(Job).where(Job.id.in_(job_ids))).all())
        if not jobs:
            raise ValueError("No valid jobs found")
        by_id = {job.id: job for job in jobs}

        workflow = Workflow(id=str(uuid.uuid4()), user_id=user_id, cv_id=cv_id, status=WORKFLOW_ACTIVE)
        self.session.add(workflow)
        self.session.flush()

        queued = 0
        for job_id in job_ids:
            job = by_id.get(job_id)
            if job is None:
                continue
            self.session.add(
                QueueItem(
                    workflow_id=workflow.id,
                    user_id=user_id,
                    cv_id=cv_id,
                    job_id=job.id,
                    job_external_id=job.external_id,
                    status=QUEUE_PENDING,
                    priority=priority,
                    attempts=0,
                    next_run_at=now,
                    payload={
                        "job_title": job.title,
                        "company": job.company,
                        "job_description": job.description,
                        "job_url": job.url,
                        "search_context": job.search_context or {},
                        "added_at": now.isoformat(),
                    },
                )
            )
            queued += 1

        self.session.commit()
        logger.info("Enqueued workflow_id=%s user_id=%s items=%s", workflow.id, user_id, queued)
        return EnqueueResult(workflow_id=workflow.id, queued_count=queued)

    def get_queue_item(self, item_id: int) -> QueueItem | None:
        statement = (
            select(QueueItem).where(QueueItem.id == item_id).execution_options(populate_existing=True)
        )
        return self.session.scalar(statement)

    def list_queue(
        self,
        *,
        user_id: str | None = None,
        workflow_id: str | None = None,
        status: str | None = None,
    ) -> list[QueueItem]:
        conditions = []
        if user_id is not None:
            conditions.append(QueueItem.user_id == user_id)
        if workflow_id is not None:
            conditions.append(QueueItem.workflow_id == workflow_id)
        if status is not None:
            conditions.append(QueueItem.status == status)

        statement = (
            select(QueueItem)
            .where(*conditions)
            .order_by(QueueItem.priority.desc(), QueueItem.next_run_at.asc(), QueueItem.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(statement).all())

    def claim_batch(
        self,
        limit: int = 20,
        now: datetime | None = None,
        *,
        lease: timedelta | None = None,
    ) -> list[QueueItem]:
        """Atomically move up to ``limit`` due items to ``processing`` and return them.

        On PostgreSQL the candidate rows are selected ``FOR UPDATE SKIP LOCKED``.
        On every backend each row is then claimed with a conditional UPDATE that
        only matches while the row is still claimable, and only rows whose update
        touched exactly one row are returned, so two claimers never share an item.
        Without row locks (SQLite) a concurrent claimer can win the race between
        select and update; the losing claimer simply gets a smaller batch.

        With a ``lease``, rows left in ``processing`` longer than the lease are
        first put back to ``pending`` so a crashed worker's claims are retried.
        """
        now = now or utcnow()
        if lease is not None:
            self._reclaim_expired(now - lease, now)
        self._sweep_cancelled(now)

        candidate_ids = self._select_candidate_ids(limit, now)
        if not candidate_ids:
            self.session.commit()
            return []

        claimed_ids = self._claim_ids(candidate_ids, now)
        if not claimed_ids:
            return []

        statement = (
            select(QueueItem)
            .where(QueueItem.id.in_(claimed_ids))
            .order_by(QueueItem.priority.desc(), QueueItem.next_run_at.asc(), QueueItem.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(statement).all())

    def _select_candidate_ids(self, limit: int, now: datetime) -> list[int]:
        cancelled = select(Workflow.id).where(Workflow.status == WORKFLOW_CANCELLED)
        statement = (
            select(QueueItem.id)
            .where(
                QueueItem.status.in_(CLAIMABLE_STATUSES),
                QueueItem.next_run_at <= now,
                QueueItem.workflow_id.not_in(cancelled),
            )
            .order_by(QueueItem.priority.desc(), QueueItem.next_run_at.asc(), QueueItem.id.asc())
            .limit(limit)
        )
        if self._supports_skip_locked():
            statement = statement.with_for_update(skip_locked=True)
        return list(self.session.scalars(statement).all())

    def _claim_ids(self, candidate_ids: list[int], now: datetime) -> list[int]:
        claimed: list[int] = []
        for item_id in candidate_ids:
            result = self.session.execute(
                update(QueueItem)
                .where(QueueItem.id == item_id, QueueItem.status.in_(CLAIMABLE_STATUSES))
                .values(status=QUEUE_PROCESSING, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(item_id)
        self.session.commit()
        return claimed

    def _reclaim_expired(self, stale_before: datetime, now: datetime) -> int:
        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.status == QUEUE_PROCESSING, QueueItem.updated_at < stale_before)
            .values(status=QUEUE_PENDING, last_error=CLAIM_EXPIRED_REASON, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount:
            logger.warning("Reclaimed %s queue items with expired claims", result.rowcount)
        return result.rowcount

    def _sweep_cancelled(self, now: datetime) -> int:
        cancelled = select(Workflow.id).where(Workflow.status == WORKFLOW_CANCELLED)
        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.status.in_(CLAIMABLE_STATUSES), QueueItem.workflow_id.in_(cancelled))
            .values(status=QUEUE_CANCELLED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if result.rowcount:
            logger.info("Swept %s queue items of cancelled workflows", result.rowcount)
        return result.rowcount

    def _supports_skip_locked(self) -> bool:
        return self.session.get_bind().dialect.name == "postgresql"

    def _workflow_cancelled(self, workflow_id: str) -> bool:
        status = self.session.scalar(select(Workflow.status).where(Workflow.id == workflow_id))
        return status == WORKFLOW_CANCELLED

    def _transition(self, item_id: int, **values: Any) -> bool:
        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status == QUEUE_PROCESSING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _require_processing(self, item_id: int) -> QueueItem | None:
        item = self.get_queue_item(item_id)
        if item is None:
            raise ValueError(f"queue item {item_id} not found")
        if item.status != QUEUE_PROCESSING:
            logger.warning(
                "Ignoring transition for queue item %s in status %s", item_id, item.status
            )
            return None
        return item

    def mark_submitted(
        self,
        item_id: int,
        *,
        result: CoreSubmissionResult,
        cover_letter: str,
        now: datetime | None = None,
    ) -> Application | None:
        now = now or utcnow()
        item = self._require_processing(item_id)
        if item is None:
            return None

        if not self._transition(item_id, status=QUEUE_SUBMITTED, last_error=None, updated_at=now):
            self.session.rollback()
            return None

        application = self._build_application(
            item,
            status=APPLICATION_SUBMITTED,
            now=now,
            cover_letter=cover_letter,
            response_data=result.raw,
            resume_id=result.resume_id,
            negotiation_id=result.negotiation_id,
        )
        self.session.add(application)
        self.session.commit()
        self.session.refresh(application)
        return application

    def reschedule_rate_limited(
        self,
        item_id: int,
        *,
        cooldown: timedelta,
        now: datetime | None = None,
    ) -> QueueItem | None:
        now = now or utcnow()
        item = self._require_processing(item_id)
        if item is None:
            return None

        status = QUEUE_CANCELLED if self._workflow_cancelled(item.workflow_id) else QUEUE_RATE_LIMITED
        self._transition(
            item_id,
            status=status,
            next_run_at=now + cooldown,
            last_error=RATE_LIMITED_REASON,
            updated_at=now,
        )
        self.session.commit()
        return self.get_queue_item(item_id)

    def record_attempt_failure(
        self,
        item_id: int,
        *,
        error: str,
        max_attempts: int = 5,
        backoff_cap_min: int = 60,
        now: datetime | None = None,
    ) -> QueueItem | None:
        now = now or utcnow()
        item = self._require_processing(item_id)
        if item is None:
            return None

        attempts = item.attempts + 1
        if attempts >= max_attempts:
            self._transition(
                item_id, status=QUEUE_FAILED, attempts=attempts, last_error=error, updated_at=now
            )
            self.session.add(
                self._build_application(item, status=APPLICATION_FAILED, now=now, error_message=error)
            )
            self.session.commit()
            logger.error(
                "Queue item %s failed permanently after %s attempts: %s", item_id, attempts, error
            )
            return self.get_queue_item(item_id)

        status = QUEUE_CANCELLED if self._workflow_cancelled(item.workflow_id) else QUEUE_PENDING
        delay = backoff_minutes(attempts, backoff_cap_min)
        self._transition(
            item_id,
            status=status,
            attempts=attempts,
            next_run_at=now + timedelta(minutes=delay),
            last_error=error,
            updated_at=now,
        )
        self.session.commit()
        return self.get_queue_item(item_id)

    def release_claim(self, item_id: int, *, error: str, now: datetime | None = None) -> bool:
        """Hand a claimed row back to the queue without spending an attempt."""
        now = now or utcnow()
        released = self._transition(item_id, status=QUEUE_PENDING, last_error=error, updated_at=now)
        self.session.commit()
        return released

    def mark_permanently_failed(
        self,
        item_id: int,
        *,
        error: str,
        now: datetime | None = None,
    ) -> QueueItem | None:
        now = now or utcnow()
        item = self._require_processing(item_id)
        if item is None:
            return None

        self._transition(
            item_id,
            status=QUEUE_FAILED,
            attempts=item.attempts + 1,
            last_error=error,
            updated_at=now,
        )
        self.session.add(
            self._build_application(item, status=APPLICATION_FAILED, now=now, error_message=error)
        )
        self.session.commit()
        return self.get_queue_item(item_id)

    def _build_application(self, item: QueueItem, *, status: str, now: datetime, **values: Any) -> Application:
        return Application(
            user_id=item.user_id,
            workflow_id=item.workflow_id,
            queue_item_id=item.id,
            cv_id=item.cv_id,
            job_id=item.job_id,
            job_external_id=item.job_external_id,
            status=status,
            submitted_at=now if status == APPLICATION_SUBMITTED else None,
            created_at=now,
            updated_at=now,
            **values,
        )

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        return self.session.get(Workflow, workflow_id)

    def cancel_workflow(
        self,
        workflow_id: str,
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Cancel every not-yet-claimed item of a workflow.

        Items already ``processing`` finish their current attempt; the
        cancelled workflow status keeps them from being claimed again.
        """
        now = now or utcnow()
        workflow = self.get_workflow(workflow_id)
        if workflow is None or (user_id is not None and workflow.user_id != user_id):
            raise ValueError(f"workflow {workflow_id} not found")

        if workflow.status != WORKFLOW_CANCELLED:
            workflow.status = WORKFLOW_CANCELLED
            workflow.cancelled_at = now

        result = self.session.execute(
            update(QueueItem)
            .where(QueueItem.workflow_id == workflow_id, QueueItem.status.in_(CLAIMABLE_STATUSES))
            .values(status=QUEUE_CANCELLED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        logger.info("Cancelled workflow_id=%s items=%s", workflow_id, result.rowcount)
        return result.rowcount

    def remove_from_queue(self, item_id: int) -> bool:
        """Delete a queue row unless a worker currently owns it."""
        if self.session.get(QueueItem, item_id) is None:
            raise ValueError(f"queue item {item_id} not found")

        result = self.session.execute(
            delete(QueueItem)
            .where(QueueItem.id == item_id, QueueItem.status != QUEUE_PROCESSING)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.expunge_all()
        return result.rowcount == 1

    def workflow_status(self, workflow_id: str) -> dict[str, Any]:
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            raise ValueError(f"workflow {workflow_id} not found")

        queue_rows = self.session.execute(
            select(QueueItem.status, func.count())
            .where(QueueItem.workflow_id == workflow_id)
            .group_by(QueueItem.status)
        ).all()
        application_rows = self.session.execute(
            select(Application.status, func.count())
            .where(Application.workflow_id == workflow_id)
            .group_by(Application.status)
        ).all()

        queue_counts = {
            status: 0
            for status in (
                QUEUE_PENDING,
                QUEUE_PROCESSING,
                QUEUE_SUBMITTED,
                QUEUE_FAILED,
                QUEUE_CANCELLED,
                QUEUE_RATE_LIMITED,
            )
        }
        queue_counts.update({status: count for status, count in queue_rows})
        return {
            "workflow_id": workflow.id,
            "user_id": workflow.user_id,
            "status": workflow.status,
            "total": sum(queue_counts.values()),
            "queue": queue_counts,
            "applications": {status: count for status, count in application_rows},
        }

    def insert_application(
        self,
        *,
        user_id: str,
        job_external_id: str,
        status: str = APPLICATION_SUBMITTED,
        created_at: datetime | None = None,
        **values: Any,
    ) -> Application:
        created_at = created_at or utcnow()
        application = Application(
            user_id=user_id,
            job_external_id=job_external_id,
            status=status,
            submitted_at=created_at if status == APPLICATION_SUBMITTED else None,
            created_at=created_at,
            updated_at=created_at,
            **values,
        )
        self.session.add(application)
        self.session.commit()
        self.session.refresh(application)
        return application

    def count_submissions_since(self, user_id: str, since: datetime) -> int:
        statement = select(func.count(Application.id)).where(
            Application.user_id == user_id,
            Application.status == APPLICATION_SUBMITTED,
            Application.created_at >= since,
        )
        return int(self.session.scalar(statement) or 0)

    def list_applications(
        self,
        *,
        user_id: str,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Application]:
        statement = select(Application).where(Application.user_id == user_id)
        if status is not None:
            statement = statement.where(Application.status == status)
        statement = statement.order_by(Application.created_at.desc(), Application.id.desc())
        return list(self.session.scalars(statement.limit(limit).offset(offset)).all())
