from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from clipflow.jobs.clips import build_clip_params, build_input_ref
from clipflow.services.errors import CallbackMismatch, ProviderFailure
from clipflow.services.providers import ProviderClient
from clipflow.services.repository import RepositoryConflictError

logger = logging.getLogger(__name__)

MAX_PROVIDER_ATTEMPTS = 2


@dataclass(slots=True)
class ProviderOutcome:
    succeeded: bool
    output_ref: str | None = None
    error_detail: str | None = None

    @classmethod
    def done(cls, output_ref: str) -> ProviderOutcome:
        return cls(succeeded=True, output_ref=output_ref)

    @classmethod
    def failed(cls, error_detail: str) -> ProviderOutcome:
        return cls(succeeded=False, error_detail=error_detail)


@dataclass(slots=True)
class ProviderInvocation:
    request: dict[str, Any] | None
    outcome: ProviderOutcome | None = None

    @property
    def is_async(self) -> bool:
        return self.outcome is None


class ProviderFallbackCoordinator:
    """Routes a job to the primary or fallback provider and records the request.

    The primary provider gets attempt 1 and the fallback provider attempt 2.
    A single invocation never retries; moving on to the fallback is the
    pipeline's decision. Every submission, inline or asynchronous, is recorded
    as a provider request so its resolution can be matched later.
    """

    def __init__(
        self,
        repository: Any,
        *,
        primary: ProviderClient,
        fallback: ProviderClient,
        callback_url: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if primary.name == fallback.name:
            raise ValueError("primary and fallback providers must have distinct names")
        self.repository = repository
        self.primary = primary
        self.fallback = fallback
        self.callback_url = callback_url
        self._clients = {primary.name: primary, fallback.name: fallback}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def provider_for_attempt(self, attempt: int) -> str:
        if attempt < 1 or attempt > MAX_PROVIDER_ATTEMPTS:
            raise ValueError(f"no provider for attempt {attempt}")
        return self.primary.name if attempt == 1 else self.fallback.name

    async def invoke(self, job: dict[str, Any], provider: str) -> ProviderInvocation:
        client = self._clients.get(provider)
        if client is None:
            raise ValueError(f"unknown provider {provider}")

        event = job.get("inputs_json") or {}
        params = build_clip_params(event)
        if self.callback_url:
            params["callback_url"] = self.callback_url
        submitted_at = self._clock()

        try:
            reply = await client.submit(job_id=job["id"], input_ref=build_input_ref(event), params=params)
        except ProviderFailure as exc:
            logger.warning("provider submission failed job_id=%s provider=%s: %s", job["id"], provider, exc.detail)
            request = await self._record(job, provider, external_ref=None, submitted_at=submitted_at)
            return ProviderInvocation(request=request, outcome=ProviderOutcome.failed(f"{provider}: {exc.detail}"))

        request = await self._record(job, provider, external_ref=reply.external_ref, submitted_at=submitted_at)
        if request is None:
            return ProviderInvocation(request=None, outcome=ProviderOutcome.failed(f"{provider}: request not recorded"))

        if reply.is_inline:
            logger.info("provider completed inline job_id=%s provider=%s", job["id"], provider)
            return ProviderInvocation(request=request, outcome=ProviderOutcome.done(reply.output_ref or ""))
        logger.info(
            "provider accepted job_id=%s provider=%s external_ref=%s",
            job["id"],
            provider,
            reply.external_ref,
        )
        return ProviderInvocation(request=request)

    async def resolve(self, external_ref: str) -> dict[str, Any]:
        request = await self.repository.get_provider_request_by_ref(external_ref)
        if request is None:
            raise CallbackMismatch(external_ref)
        return request

    async def _record(
        self,
        job: dict[str, Any],
        provider: str,
        *,
        external_ref: str | None,
        submitted_at: datetime,
    ) -> dict[str, Any] | None:
        try:
            return await self.repository.insert_provider_request(
                job_id=job["id"],
                provider=provider,
                attempt=job["attempt"],
                external_ref=external_ref,
                submitted_at=submitted_at,
            )
        except RepositoryConflictError as exc:
            logger.error("provider request not recorded job_id=%s provider=%s: %s", job["id"], provider, exc)
            return None
