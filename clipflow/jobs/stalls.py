from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

PROVIDER_WAIT_STATES = ("DISPATCHED", "PROCESSING")
PUBLISH_WAIT_STATES = ("PUBLISHING",)


def stall_timeout_seconds(job: dict[str, Any], *, processing_timeout: int, publish_timeout: int) -> int | None:
    state = job.get("state")
    if state in PROVIDER_WAIT_STATES:
        return processing_timeout
    if state in PUBLISH_WAIT_STATES:
        return publish_timeout
    return None


def is_stalled(
    job: dict[str, Any],
    *,
    processing_timeout: int,
    publish_timeout: int,
    now: datetime | None = None,
) -> bool:
    timeout = stall_timeout_seconds(job, processing_timeout=processing_timeout, publish_timeout=publish_timeout)
    if timeout is None:
        return False

    now = now or datetime.now(timezone.utc)
    updated_at = job.get("updated_at")
    if isinstance(updated_at, str):
        updated_at = datetime.fromisoformat(updated_at.replace("Z", "+00:00"))
    if not isinstance(updated_at, datetime):
        return False

    return updated_at + timedelta(seconds=timeout) <= now
