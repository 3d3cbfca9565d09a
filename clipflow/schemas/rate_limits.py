from datetime import datetime

from pydantic import BaseModel, Field


class RateLimitRequest(BaseModel):
    key: str = Field(min_length=1, max_length=200)
    limit: int | None = Field(default=None, ge=1)
    window_seconds: int | None = Field(default=None, ge=1)
    now: datetime | None = None


class RateLimitDecisionOut(BaseModel):
    key: str
    allowed: bool
    remaining: int
    reset_seconds: int
