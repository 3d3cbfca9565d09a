from __future__ import annotations

import asyncio
from typing import Any

from clipflow.services.coordinator import ProviderOutcome
from clipflow.services.states import JobState

SCORE_EVENT = {"kind": "score", "subject_id": "P1", "occurred_at_minute": 37}


def test_stalled_processing_job_fails_exactly_once(make_harness) -> None:
    harness = make_harness(primary=[{"external_ref": "A-1"}])

    async def run() -> tuple[Any, Any, Any, dict[str, Any], dict[str, Any] | None]:
        submission = await harness.pipeline.submit(SCORE_EVENT)
        await harness.pipeline.dispatch(submission.job["id"])
        harness.clock.advance(899)
        early = await harness.pipeline.sweep()
        harness.clock.advance(1)
        first = await harness.pipeline.sweep()
        second = await harness.pipeline.sweep()
        late = await harness.router.handle("A-1", ProviderOutcome.done("clip-late"))
        job = await harness.repository.get_job(submission.job["id"])
        record = await harness.repository.get_idempotency_record(submission.key)
        return (early, first, second), late, record, job, await harness.repository.get_open_provider_request(job["id"])

    (early, first, second), late, record, job, open_request = asyncio.run(run())
    assert early.stalled_failed == 0
    assert first.stalled_failed == 1
    assert second.stalled_failed == 0
    assert late.matched and not late.transitioned
    assert job["state"] == "FAILED"
    assert job["error"] == "timed out in PROCESSING"
    assert record["result_summary"]["state"] == "FAILED"
    assert open_request is None
    assert harness.repository._provider_requests[0]["resolution"] == "timeout"
    assert harness.publish.requests == []
    assert len(harness.alerts.requests) == 1


def test_sweep_racing_late_callback_has_one_winner(make_harness) -> None:
    harness = make_harness(primary=[{"external_ref": "A-1"}])

    async def run() -> tuple[Any, Any, dict[str, Any], dict[str, Any]]:
        submission = await harness.pipeline.submit(SCORE_EVENT)
        await harness.pipeline.dispatch(submission.job["id"])
        harness.clock.advance(1800)
        report, receipt = await asyncio.gather(
            harness.pipeline.sweep(),
            harness.router.handle("A-1", ProviderOutcome.done("clip-1")),
        )
        job = await harness.repository.get_job(submission.job["id"])
        record = await harness.repository.get_idempotency_record(submission.key)
        return report, receipt, job, record

    report, receipt, job, record = asyncio.run(run())
    assert job["state"] in {"FAILED", "PUBLISHED"}
    assert (report.stalled_failed == 1) != receipt.transitioned
    assert record["result_summary"]["state"] == job["state"]


def test_stalled_publishing_job_uses_publish_timeout(make_harness) -> None:
    harness = make_harness(primary=[{"external_ref": "A-1"}])

    async def run() -> tuple[int, int, dict[str, Any]]:
        submission = await harness.pipeline.submit(SCORE_EVENT)
        job_id = submission.job["id"]
        await harness.pipeline.dispatch(job_id)
        await harness.repository.transition_job(
            job_id,
            from_states=[JobState.PROCESSING],
            to_state=JobState.PROCESSED,
            now=harness.clock(),
            changes={"output_ref": "clip-1", "next_attempt_at": None},
        )
        await harness.repository.transition_job(
            job_id,
            from_states=[JobState.PROCESSED],
            to_state=JobState.PUBLISHING,
            now=harness.clock(),
        )
        harness.clock.advance(599)
        early = await harness.pipeline.sweep()
        harness.clock.advance(1)
        report = await harness.pipeline.sweep()
        return early.stalled_failed, report.stalled_failed, await harness.repository.get_job(job_id)

    early, failed, job = asyncio.run(run())
    assert early == 0
    assert failed == 1
    assert job["state"] == "FAILED"
    assert job["error"] == "timed out in PUBLISHING"


def test_sweep_dispatches_jobs_whose_immediate_dispatch_was_lost(make_harness) -> None:
    harness = make_harness()

    async def run() -> tuple[int, int, dict[str, Any]]:
        submission = await harness.pipeline.submit(SCORE_EVENT)
        within_grace = await harness.pipeline.sweep()
        harness.clock.advance(30)
        report = await harness.pipeline.sweep()
        return within_grace.dispatched, report.dispatched, await harness.repository.get_job(submission.job["id"])

    within_grace, dispatched, job = asyncio.run(run())
    assert within_grace == 0
    assert dispatched == 1
    assert job["state"] == "PUBLISHED"
