from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from clipflow.services.coordinator import ProviderFallbackCoordinator, ProviderOutcome
from clipflow.services.errors import CallbackMismatch
from clipflow.services.pipeline import JobPipeline

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CallbackReceipt:
    matched: bool
    transitioned: bool
    job_id: str | None = None
    state: str | None = None


class CallbackRouter:
    """Matches provider callbacks to jobs and feeds them into the pipeline.

    ``handle`` never raises: unknown references are logged and dropped, and a
    repeated delivery is a no-op that still reports success to the provider.
    """

    def __init__(self, coordinator: ProviderFallbackCoordinator, pipeline: JobPipeline) -> None:
        self.coordinator = coordinator
        self.pipeline = pipeline

    async def handle(self, external_ref: str, outcome: ProviderOutcome) -> CallbackReceipt:
        try:
            request = await self.coordinator.resolve(external_ref)
        except CallbackMismatch as exc:
            logger.warning("callback dropped: %s", exc)
            return CallbackReceipt(matched=False, transitioned=False)
        except Exception:
            logger.exception("callback lookup failed external_ref=%s", external_ref)
            return CallbackReceipt(matched=False, transitioned=False)

        job_id = request["job_id"]
        try:
            before = await self.pipeline.repository.get_job(job_id)
            after = await self.pipeline.on_provider_result(job_id, outcome, attempt=request["attempt"])
        except Exception:
            logger.exception("callback handling failed job_id=%s external_ref=%s", job_id, external_ref)
            return CallbackReceipt(matched=True, transitioned=False, job_id=job_id)

        transitioned = _job_version(after) != _job_version(before)
        if not transitioned:
            logger.info("duplicate or stale callback job_id=%s external_ref=%s", job_id, external_ref)
        return CallbackReceipt(matched=True, transitioned=transitioned, job_id=job_id, state=after["state"])


def _job_version(job: dict[str, Any]) -> tuple[Any, ...]:
    return job["state"], job["attempt"], job["updated_at"]
