from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from applyflow.db.base import Base, TimestampMixin, utcnow

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_SUBMITTED = "submitted"
QUEUE_FAILED = "failed"
QUEUE_CANCELLED = "cancelled"
QUEUE_RATE_LIMITED = "rate_limited"

CLAIMABLE_STATUSES = (QUEUE_PENDING, QUEUE_RATE_LIMITED)

WORKFLOW_ACTIVE = "active"
WORKFLOW_CANCELLED = "cancelled"

APPLICATION_SUBMITTED = "submitted"
APPLICATION_FAILED = "failed"


class CV(TimestampMixin, Base):
    __tablename__ = "cvs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    parsed_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


class Job(TimestampMixin, Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    company: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    url: Mapped[str] = mapped_column(String(800), default="", nullable=False)
    search_context: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class Workflow(TimestampMixin, Base):
    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    cv_id: Mapped[int] = mapped_column(ForeignKey("cvs.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=WORKFLOW_ACTIVE, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class QueueItem(TimestampMixin, Base):
    __tablename__ = "application_queue"
    __table_args__ = (
        Index("ix_application_queue_status_next_run_at", "status", "next_run_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    cv_id: Mapped[int] = mapped_column(ForeignKey("cvs.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[int | None] = mapped_column(ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True)
    job_external_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=QUEUE_PENDING, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class Application(TimestampMixin, Base):
    __tablename__ = "applications"
    __table_args__ = (Index("ix_applications_user_id_created_at", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    workflow_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    queue_item_id: Mapped[int | None] = mapped_column(
        ForeignKey("application_queue.id", ondelete="SET NULL"), nullable=True
    )
    cv_id: Mapped[int | None] = mapped_column(ForeignKey("cvs.id", ondelete="SET NULL"), nullable=True)
    job_id: Mapped[int | None] = mapped_column(ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True)
    job_external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=APPLICATION_SUBMITTED, nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cover_letter: Mapped[str] = mapped_column(Text, default="", nullable=False)
    response_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    resume_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    negotiation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
