from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from clipflow.services.sweep_client import SweepClient
from clipflow.worker import next_backoff, run_sweep_cycle


def test_sweep_client_posts_with_machine_headers() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"stalled_failed": 1, "dispatched": 2, "published": 0, "errors": []},
            request=request,
        )

    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sweep_client = SweepClient("http://api.test/", "local-sweeper", "local-sweeper-key", client=client)
            return await run_sweep_cycle(sweep_client)

    report = asyncio.run(run())
    assert report == {"stalled_failed": 1, "dispatched": 2, "published": 0, "errors": []}
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "http://api.test/jobs/sweep"
    assert seen[0].headers["x-module-id"] == "local-sweeper"
    assert seen[0].headers["x-api-key"] == "local-sweeper-key"


def test_sweep_client_raises_on_http_error() -> None:
    async def run() -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(503, request=request))
        async with httpx.AsyncClient(transport=transport) as client:
            await SweepClient("http://api.test", "m", "k", client=client).sweep()

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(run())


def test_next_backoff_grows_and_caps() -> None:
    assert next_backoff(5.0, max_backoff=60.0, jitter=0.0) == 10.0
    assert next_backoff(5.0, max_backoff=60.0, jitter=0.5) == 12.5
    assert next_backoff(40.0, max_backoff=60.0, jitter=0.0) == 60.0
    assert 10.0 <= next_backoff(5.0, max_backoff=60.0) <= 12.5
