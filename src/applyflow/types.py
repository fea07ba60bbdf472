from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EnqueueRequest(BaseModel):
    user_id: str
    cv_id: int
    job_ids: list[int]
    priority: int = 0

    @field_validator("job_ids")
    @classmethod
    def validate_job_ids(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("job_ids must not be empty")
        return list(dict.fromkeys(value))


class EnqueueResult(BaseModel):
    workflow_id: str
    queued_count: int


class CustomizedCV(BaseModel):
    model_config = ConfigDict(extra="allow")

    summary: str = ""
    skills: list[str] = Field(default_factory=list)
    experience: list[dict[str, Any]] = Field(default_factory=list)
    education: list[dict[str, Any]] = Field(default_factory=list)
    highlights: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CoreSubmissionResult(BaseModel):
    resume_id: str | None = None
    negotiation_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class RateLimitStatus(BaseModel):
    user_id: str
    hourly_count: int
    hourly_limit: int
    daily_count: int
    daily_limit: int
    can_submit: bool


class ModelResponse(BaseModel):
    content: str
    raw: dict[str, Any] = Field(default_factory=dict)
