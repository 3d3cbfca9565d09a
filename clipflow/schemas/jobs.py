from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobStateName = Literal[
    "CREATED",
    "DISPATCHED",
    "PROCESSING",
    "PROCESSED",
    "PROCESSING_FAILED",
    "PUBLISHING",
    "PUBLISHED",
    "PUBLISH_FAILED",
    "FAILED",
]


class JobOut(BaseModel):
    id: str
    subject_id: str
    source_event_key: str
    state: str
    attempt: int
    provider: str
    output_ref: str | None = None
    publish_ref: str | None = None
    error: str | None = None
    publish_retries: int = 0
    next_attempt_at: datetime | None = None
    inputs_json: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    items: list[JobOut]
    limit: int
    offset: int


class SweepOut(BaseModel):
    stalled_failed: int
    dispatched: int
    published: int
    errors: list[str] = Field(default_factory=list)
