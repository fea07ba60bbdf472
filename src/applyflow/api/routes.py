from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from applyflow.api.deps import get_core_client, get_db
from applyflow.api.schemas import (
    ApplicationResponse,
    CancelWorkflowRequest,
    CancelWorkflowResponse,
    QueueItemResponse,
    WorkflowStatusResponse,
)
from applyflow.clients.core import CoreClient
from applyflow.config import get_settings
from applyflow.core.rate_limiter import RateLimiter
from applyflow.db.repositories import Repository
from applyflow.types import EnqueueRequest, EnqueueResult, RateLimitStatus

router = APIRouter(prefix="/api", tags=["api"])
health_router = APIRouter(tags=["health"])


@health_router.get("/health/core")
async def core_health(client: CoreClient = Depends(get_core_client)) -> dict[str, Any]:
    return await client.health()


@router.post("/queue", response_model=EnqueueResult)
def enqueue(payload: EnqueueRequest, db: Session = Depends(get_db)) -> EnqueueResult:
    repo = Repository(db)
    try:
        return repo.enqueue_jobs(
            user_id=payload.user_id,
            cv_id=payload.cv_id,
            job_ids=payload.job_ids,
            priority=payload.priority,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/queue", response_model=list[QueueItemResponse])
def list_queue(
    user_id: str | None = None,
    workflow_id: str | None = None,
    status: str | None = None,
    db: Session = Depends(get_db),
) -> list[QueueItemResponse]:
    rows = Repository(db).list_queue(user_id=user_id, workflow_id=workflow_id, status=status)
    return [QueueItemResponse.model_validate(row) for row in rows]


@router.delete("/queue/{item_id}")
def remove_queue_item(item_id: int, db: Session = Depends(get_db)) -> dict:
    try:
        removed = Repository(db).remove_from_queue(item_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Queue item not found") from exc
    if not removed:
        raise HTTPException(status_code=409, detail="Queue item is being processed")
    return {"id": item_id, "removed": True}


@router.get("/workflows/{workflow_id}", response_model=WorkflowStatusResponse)
def workflow_status(workflow_id: str, db: Session = Depends(get_db)) -> WorkflowStatusResponse:
    try:
        return WorkflowStatusResponse(**Repository(db).workflow_status(workflow_id))
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Workflow not found") from exc


@router.post("/workflows/{workflow_id}/cancel", response_model=CancelWorkflowResponse)
def cancel_workflow(
    workflow_id: str,
    payload: CancelWorkflowRequest | None = None,
    db: Session = Depends(get_db),
) -> CancelWorkflowResponse:
    user_id = payload.user_id if payload else None
    try:
        cancelled = Repository(db).cancel_workflow(workflow_id, user_id=user_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Workflow not found") from exc
    return CancelWorkflowResponse(workflow_id=workflow_id, cancelled_count=cancelled)


@router.get("/applications", response_model=list[ApplicationResponse])
def list_applications(
    user_id: str,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
) -> list[ApplicationResponse]:
    rows = Repository(db).list_applications(user_id=user_id, status=status, limit=limit, offset=offset)
    return [ApplicationResponse.model_validate(row) for row in rows]


@router.get("/rate-limit/{user_id}", response_model=RateLimitStatus)
def rate_limit_status(user_id: str, db: Session = Depends(get_db)) -> RateLimitStatus:
    return RateLimiter.from_settings(Repository(db), get_settings()).usage(user_id)
