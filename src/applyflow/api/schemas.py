from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class QueueItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    workflow_id: str
    user_id: str
    cv_id: int
    job_id: int | None
    job_external_id: str
    status: str
    priority: int
    attempts: int
    next_run_at: datetime
    last_error: str | None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class ApplicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    workflow_id: str | None
    queue_item_id: int | None
    job_external_id: str
    status: str
    submitted_at: datetime | None
    cover_letter: str = ""
    error_message: str | None
    resume_id: str | None
    negotiation_id: str | None
    created_at: datetime


class WorkflowStatusResponse(BaseModel):
    workflow_id: str
    user_id: str
    status: str
    total: int
    queue: dict[str, int]
    applications: dict[str, int]


class CancelWorkflowRequest(BaseModel):
    user_id: str | None = None


class CancelWorkflowResponse(BaseModel):
    workflow_id: str
    cancelled_count: int
