from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from clipflow.core.config import get_worker_settings
from clipflow.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from clipflow.services.sweep_client import SweepClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def next_backoff(current: float, *, max_backoff: float, jitter: float | None = None) -> float:
    spread = random.uniform(0.0, 0.5) if jitter is None else jitter
    return min(current * (2.0 + spread), max_backoff)


async def run_sweep_cycle(client: SweepClient) -> dict[str, object]:
    with tracer.start_as_current_span("worker.sweep_cycle") as span:
        report = await client.sweep()
        span.set_attribute("sweep.stalled_failed", report["stalled_failed"])
        span.set_attribute("sweep.dispatched", report["dispatched"])
        span.set_attribute("sweep.published", report["published"])
        if report["stalled_failed"] or report["dispatched"] or report["published"]:
            logger.info(
                "sweep cycle stalled_failed=%s dispatched=%s published=%s",
                report["stalled_failed"],
                report["dispatched"],
                report["published"],
            )
        for error in report["errors"]:
            logger.warning("sweep reported error: %s", error)
        return report


async def run_worker() -> None:
    settings = get_worker_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    client = SweepClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.sweep_interval_seconds
    try:
        while True:
            try:
                await run_sweep_cycle(client)
                backoff = settings.sweep_interval_seconds
                await asyncio.sleep(settings.sweep_interval_seconds)
            except Exception as exc:  # pragma: no cover - loop robustness
                sleep_for = next_backoff(backoff, max_backoff=settings.max_backoff_seconds)
                logger.exception("sweep iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
