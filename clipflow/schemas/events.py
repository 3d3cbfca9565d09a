from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class EventIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: str
    subject_id: str = Field(validation_alias=AliasChoices("subject_id", "subjectId"))
    occurred_at_minute: int = Field(validation_alias=AliasChoices("occurred_at_minute", "occurredAtMinute", "minute"))
    attributes: dict[str, Any] = Field(default_factory=dict)


class EventAccepted(BaseModel):
    status: Literal["accepted", "duplicate", "in_flight"]
    idempotency_key: str
    job_id: str | None = None
    result: dict[str, Any] | None = None
