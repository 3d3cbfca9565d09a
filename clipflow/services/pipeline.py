from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from clipflow.core.fingerprint import canonicalize_event
from clipflow.core.telemetry import traced_operation
from clipflow.jobs.clips import build_publish_metadata
from clipflow.jobs.stalls import PROVIDER_WAIT_STATES, PUBLISH_WAIT_STATES, is_stalled
from clipflow.services.coordinator import MAX_PROVIDER_ATTEMPTS, ProviderFallbackCoordinator, ProviderOutcome
from clipflow.services.errors import DuplicateSuppressed, PublishFailure, RateLimited
from clipflow.services.idempotency import Admission, IdempotencyGuard
from clipflow.services.publisher import PublishClient, WebhookNotifier
from clipflow.services.rate_limit import PROVIDER_EGRESS_KEY, PUBLISH_EGRESS_KEY, RateLimiter
from clipflow.services.repository import RepositoryConflictError
from clipflow.services.states import (
    ALLOWED_TRANSITIONS,
    AWAITING_PROVIDER_STATES,
    DISPATCHABLE_STATES,
    PUBLISHABLE_STATES,
    JobState,
    is_terminal,
)

logger = logging.getLogger(__name__)

SUBMISSION_ACCEPTED = "accepted"
SUBMISSION_DUPLICATE = "duplicate"
SUBMISSION_IN_FLIGHT = "in_flight"


@dataclass(slots=True)
class Submission:
    status: str
    key: str
    job: dict[str, Any] | None = None
    result: dict[str, Any] | None = None


@dataclass(slots=True)
class SweepReport:
    stalled_failed: int = 0
    dispatched: int = 0
    published: int = 0
    errors: list[str] = field(default_factory=list)


def job_summary(job: dict[str, Any]) -> dict[str, Any]:
    """Terminal result stored against the event's idempotency key."""
    return {
        "job_id": job["id"],
        "state": job["state"],
        "attempt": job["attempt"],
        "provider": job["provider"],
        "output_ref": job.get("output_ref"),
        "publish_ref": job.get("publish_ref"),
        "error": job.get("error"),
    }


class JobPipeline:
    """State machine driving one job from admission to a terminal state.

    Every mutation is a compare-and-set on the job's current state (and, for
    provider results, on the attempt the result belongs to), so racing
    triggers for the same job resolve to exactly one winner. The losers read
    the job back and return it unchanged.
    """

    def __init__(
        self,
        repository: Any,
        *,
        guard: IdempotencyGuard,
        limiter: RateLimiter,
        coordinator: ProviderFallbackCoordinator,
        publisher: PublishClient,
        fanout: WebhookNotifier | None = None,
        alerts: WebhookNotifier | None = None,
        publish_max_retries: int = 5,
        publish_retry_base_seconds: int = 30,
        publish_retry_max_seconds: int = 900,
        processing_timeout_seconds: int = 900,
        publish_timeout_seconds: int = 600,
        sweep_batch_size: int = 100,
        dispatch_grace_seconds: int = 30,
        default_visibility: str = "unlisted",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.guard = guard
        self.limiter = limiter
        self.coordinator = coordinator
        self.publisher = publisher
        self.fanout = fanout
        self.alerts = alerts
        self.publish_max_retries = max(0, publish_max_retries)
        self.publish_retry_base_seconds = max(1, publish_retry_base_seconds)
        self.publish_retry_max_seconds = max(self.publish_retry_base_seconds, publish_retry_max_seconds)
        self.processing_timeout_seconds = processing_timeout_seconds
        self.publish_timeout_seconds = publish_timeout_seconds
        self.sweep_batch_size = max(1, sweep_batch_size)
        self.dispatch_grace_seconds = max(0, dispatch_grace_seconds)
        self.default_visibility = default_visibility
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # admission

    @traced_operation("pipeline.submit")
    async def submit(self, raw_event: dict[str, Any], explicit_key: str | None = None) -> Submission:
        event = canonicalize_event(raw_event)
        admission = await self.guard.admit(event, explicit_key)
        if not admission.accepted:
            return await self._short_circuit(admission)
        try:
            job = await self.create(event, admission)
        except RepositoryConflictError:
            logger.info("live job already exists for re-admitted key=%s", admission.key)
            job = await self.repository.get_job_by_source_key(admission.key)
            return Submission(status=SUBMISSION_IN_FLIGHT, key=admission.key, job=job)
        except Exception:
            # A pending record without a job row would block every resubmission.
            await self.guard.release(admission.key)
            raise
        return Submission(status=SUBMISSION_ACCEPTED, key=admission.key, job=job)

    @traced_operation("pipeline.create")
    async def create(self, event: dict[str, Any], admission: Admission) -> dict[str, Any]:
        if not admission.accepted:
            raise DuplicateSuppressed(admission.key, admission.existing_result)
        now = self._clock()
        job = await self.repository.create_job(
            subject_id=event["subject_id"],
            source_event_key=admission.key,
            provider=self.coordinator.provider_for_attempt(1),
            inputs_json=event,
            now=now,
            next_attempt_at=now + timedelta(seconds=self.dispatch_grace_seconds),
        )
        logger.info("job created job_id=%s key=%s kind=%s", job["id"], admission.key, event["kind"])
        return job

    # processing

    @traced_operation("pipeline.dispatch")
    async def dispatch(self, job_id: str) -> dict[str, Any]:
        job = await self.repository.get_job(job_id)
        if job["state"] not in _values(DISPATCHABLE_STATES):
            logger.debug("dispatch skipped job_id=%s state=%s", job_id, job["state"])
            return job

        attempt = job["attempt"] + 1
        if attempt > MAX_PROVIDER_ATTEMPTS:
            logger.error("dispatch refused job_id=%s: provider attempts exhausted", job_id)
            return job

        try:
            await self.limiter.acquire(PROVIDER_EGRESS_KEY)
        except RateLimited as exc:
            return await self._defer(job, exc.reset_seconds)

        provider = self.coordinator.provider_for_attempt(attempt)
        dispatched = await self._transition(
            job,
            JobState.DISPATCHED,
            expected_attempt=job["attempt"],
            changes={"attempt": attempt, "provider": provider, "next_attempt_at": None, "error": None},
        )
        if dispatched is None:
            return await self.repository.get_job(job_id)
        logger.info("job dispatched job_id=%s provider=%s attempt=%s", job_id, provider, attempt)

        invocation = await self.coordinator.invoke(dispatched, provider)
        if not invocation.is_async:
            return await self.on_provider_result(job_id, invocation.outcome, attempt=attempt)

        processing = await self._transition(dispatched, JobState.PROCESSING, expected_attempt=attempt)
        if processing is None:
            # A callback already moved the job on.
            return await self.repository.get_job(job_id)
        return processing

    @traced_operation("pipeline.on_provider_result")
    async def on_provider_result(
        self,
        job_id: str,
        outcome: ProviderOutcome,
        attempt: int | None = None,
    ) -> dict[str, Any]:
        job = await self.repository.get_job(job_id)
        if job["state"] not in _values(AWAITING_PROVIDER_STATES):
            logger.info("provider result ignored job_id=%s state=%s", job_id, job["state"])
            return job
        if attempt is not None and attempt != job["attempt"]:
            logger.info("stale provider result ignored job_id=%s attempt=%s current=%s", job_id, attempt, job["attempt"])
            return job

        now = self._clock()
        current_attempt = job["attempt"]
        if outcome.succeeded:
            updated = await self._transition(
                job,
                JobState.PROCESSED,
                expected_attempt=current_attempt,
                changes={
                    "output_ref": outcome.output_ref,
                    "next_attempt_at": now + timedelta(seconds=self.dispatch_grace_seconds),
                },
                now=now,
            )
            if updated is None:
                return await self.repository.get_job(job_id)
            await self._resolve_request(job_id, current_attempt, "done", now)
            logger.info("job processed job_id=%s output_ref=%s", job_id, outcome.output_ref)
            return await self.publish(job_id)

        detail = outcome.error_detail or "provider reported an error"
        if current_attempt < MAX_PROVIDER_ATTEMPTS:
            updated = await self._transition(
                job,
                JobState.PROCESSING_FAILED,
                expected_attempt=current_attempt,
                changes={"error": detail, "next_attempt_at": now + timedelta(seconds=self.dispatch_grace_seconds)},
                now=now,
            )
            if updated is None:
                return await self.repository.get_job(job_id)
            await self._resolve_request(job_id, current_attempt, "error", now)
            logger.warning("provider failed job_id=%s attempt=%s, falling back: %s", job_id, current_attempt, detail)
            return await self.dispatch(job_id)

        updated = await self._transition(
            job,
            JobState.FAILED,
            expected_attempt=current_attempt,
            changes={"error": detail, "next_attempt_at": None},
            now=now,
        )
        if updated is None:
            return await self.repository.get_job(job_id)
        await self._resolve_request(job_id, current_attempt, "error", now)
        logger.warning("job failed after fallback job_id=%s: %s", job_id, detail)
        await self._finalize(updated)
        return updated

    # publishing

    @traced_operation("pipeline.publish")
    async def publish(self, job_id: str) -> dict[str, Any]:
        job = await self.repository.get_job(job_id)
        if job["state"] not in _values(PUBLISHABLE_STATES):
            logger.debug("publish skipped job_id=%s state=%s", job_id, job["state"])
            return job

        try:
            await self.limiter.acquire(PUBLISH_EGRESS_KEY)
        except RateLimited as exc:
            return await self._defer(job, exc.reset_seconds)

        publishing = await self._transition(job, JobState.PUBLISHING, changes={"next_attempt_at": None})
        if publishing is None:
            return await self.repository.get_job(job_id)

        metadata = build_publish_metadata(job.get("inputs_json") or {}, default_visibility=self.default_visibility)
        try:
            url = await self.publisher.publish(job_id=job_id, output_ref=publishing["output_ref"], metadata=metadata)
        except PublishFailure as exc:
            return await self._publish_failed(publishing, str(exc))

        published = await self._transition(publishing, JobState.PUBLISHED, changes={"publish_ref": url, "error": None})
        if published is None:
            logger.warning("publish completed after job left PUBLISHING job_id=%s url=%s", job_id, url)
            return await self.repository.get_job(job_id)
        logger.info("job published job_id=%s publish_ref=%s", job_id, url)
        await self._finalize(published)
        await self._fan_out(published, metadata)
        return published

    def publish_retry_delay_seconds(self, retry_count: int) -> int:
        exponent = max(0, retry_count)
        return min(self.publish_retry_base_seconds * (2**exponent), self.publish_retry_max_seconds)

    async def _publish_failed(self, job: dict[str, Any], detail: str) -> dict[str, Any]:
        now = self._clock()
        retries = job["publish_retries"] + 1
        if retries > self.publish_max_retries:
            failed = await self._transition(
                job,
                JobState.FAILED,
                changes={"publish_retries": retries, "error": f"publish retries exhausted: {detail}", "next_attempt_at": None},
                now=now,
            )
            if failed is None:
                return await self.repository.get_job(job["id"])
            logger.warning("job failed after publish retries job_id=%s retries=%s", job["id"], retries)
            await self._finalize(failed)
            return failed

        delay = self.publish_retry_delay_seconds(retries - 1)
        deferred = await self._transition(
            job,
            JobState.PUBLISH_FAILED,
            changes={
                "publish_retries": retries,
                "error": detail,
                "next_attempt_at": now + timedelta(seconds=delay),
            },
            now=now,
        )
        if deferred is None:
            return await self.repository.get_job(job["id"])
        logger.warning("publish failed job_id=%s retry=%s next_in=%ss: %s", job["id"], retries, delay, detail)
        return deferred

    # sweeping

    @traced_operation("pipeline.sweep")
    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """Fail stalled jobs, then retry due dispatches and publishes."""
        now = now or self._clock()
        report = SweepReport()

        for states, timeout in (
            (PROVIDER_WAIT_STATES, self.processing_timeout_seconds),
            (PUBLISH_WAIT_STATES, self.publish_timeout_seconds),
        ):
            stalled = await self.repository.list_stalled_jobs(
                states=states,
                updated_before=now - timedelta(seconds=timeout),
                limit=self.sweep_batch_size,
            )
            for job in stalled:
                if not is_stalled(
                    job,
                    processing_timeout=self.processing_timeout_seconds,
                    publish_timeout=self.publish_timeout_seconds,
                    now=now,
                ):
                    continue
                if await self._fail_stalled(job, now):
                    report.stalled_failed += 1

        due_dispatch = await self.repository.list_due_jobs(states=DISPATCHABLE_STATES, now=now, limit=self.sweep_batch_size)
        for job in due_dispatch:
            try:
                result = await self.dispatch(job["id"])
            except Exception as exc:
                logger.exception("sweep dispatch failed job_id=%s", job["id"])
                report.errors.append(f"{job['id']}: {exc}")
                continue
            if result["attempt"] > job["attempt"]:
                report.dispatched += 1

        due_publish = await self.repository.list_due_jobs(states=PUBLISHABLE_STATES, now=now, limit=self.sweep_batch_size)
        for job in due_publish:
            try:
                result = await self.publish(job["id"])
            except Exception as exc:
                logger.exception("sweep publish failed job_id=%s", job["id"])
                report.errors.append(f"{job['id']}: {exc}")
                continue
            if result["state"] == JobState.PUBLISHED.value:
                report.published += 1

        if report.stalled_failed or report.dispatched or report.published or report.errors:
            logger.info(
                "sweep finished stalled_failed=%s dispatched=%s published=%s errors=%s",
                report.stalled_failed,
                report.dispatched,
                report.published,
                len(report.errors),
            )
        return report

    async def _fail_stalled(self, job: dict[str, Any], now: datetime) -> bool:
        state = job["state"]
        failed = await self._transition(
            job,
            JobState.FAILED,
            expected_attempt=job["attempt"],
            changes={"error": f"timed out in {state}", "next_attempt_at": None},
            now=now,
        )
        if failed is None:
            return False
        if state in _values(AWAITING_PROVIDER_STATES):
            await self._resolve_request(job["id"], job["attempt"], "timeout", now)
        logger.warning("stalled job failed job_id=%s state=%s", job["id"], state)
        await self._finalize(failed)
        return True

    # helpers

    async def _short_circuit(self, admission: Admission) -> Submission:
        if admission.existing_result is not None:
            return Submission(status=SUBMISSION_DUPLICATE, key=admission.key, result=admission.existing_result)
        job = await self.repository.get_job_by_source_key(admission.key)
        if job is not None and is_terminal(job["state"]):
            # Terminal job whose result write has not landed yet.
            return Submission(status=SUBMISSION_DUPLICATE, key=admission.key, job=job, result=job_summary(job))
        return Submission(status=SUBMISSION_IN_FLIGHT, key=admission.key, job=job)

    async def _defer(self, job: dict[str, Any], reset_seconds: int) -> dict[str, Any]:
        now = self._clock()
        retry_at = now + timedelta(seconds=max(1, reset_seconds))
        deferred = await self.repository.transition_job(
            job["id"],
            from_states=[job["state"]],
            to_state=None,
            now=now,
            expected_attempt=job["attempt"],
            changes={"next_attempt_at": retry_at},
        )
        logger.info("egress rate limited job_id=%s state=%s retry_in=%ss", job["id"], job["state"], reset_seconds)
        return deferred or await self.repository.get_job(job["id"])

    async def _transition(
        self,
        job: dict[str, Any],
        to_state: JobState,
        *,
        expected_attempt: int | None = None,
        changes: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any] | None:
        from_state = JobState(job["state"])
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise ValueError(f"illegal transition {from_state.value} -> {to_state.value}")
        return await self.repository.transition_job(
            job["id"],
            from_states=[from_state],
            to_state=to_state,
            now=now or self._clock(),
            expected_attempt=expected_attempt,
            changes=changes,
        )

    async def _resolve_request(self, job_id: str, attempt: int, resolution: str, now: datetime) -> None:
        resolved = await self.repository.resolve_provider_request(
            job_id=job_id,
            attempt=attempt,
            resolution=resolution,
            now=now,
        )
        if not resolved:
            logger.debug("no open provider request job_id=%s attempt=%s", job_id, attempt)

    async def _finalize(self, job: dict[str, Any]) -> None:
        summary = job_summary(job)
        await self.guard.record_result(job["source_event_key"], summary)
        if job["state"] == JobState.FAILED.value and self.alerts is not None and self.alerts.enabled:
            await self.alerts.notify(
                {
                    "event": "job_failed",
                    "job_id": job["id"],
                    "subject_id": job["subject_id"],
                    "error": job.get("error"),
                    "attempt": job["attempt"],
                },
                idempotency_key=f"alert:{job['id']}",
            )

    async def _fan_out(self, job: dict[str, Any], metadata: dict[str, str]) -> None:
        if self.fanout is None or not self.fanout.enabled:
            return
        delivered = await self.fanout.notify(
            {
                "job_id": job["id"],
                "subject_id": job["subject_id"],
                "url": job["publish_ref"],
                "metadata": metadata,
            },
            idempotency_key=f"fanout:{job['id']}",
        )
        if not delivered:
            logger.warning("fan-out not delivered job_id=%s", job["id"])


def _values(states: Iterable[JobState]) -> set[str]:
    return {state.value for state in states}
