from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from clipflow.services.errors import ProviderFailure, PublishFailure
from clipflow.services.providers import ProviderClient, ProviderReply, parse_provider_reply
from clipflow.services.publisher import PublishClient, WebhookNotifier


def _refuse_connection(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("refused", request=request)


def test_parse_provider_reply_variants() -> None:
    assert parse_provider_reply("a", {"status": "done", "output_ref": "clip-1"}) == ProviderReply(output_ref="clip-1")
    assert parse_provider_reply("a", {"status": "DONE", "outputRef": "clip-2"}).output_ref == "clip-2"
    assert parse_provider_reply("a", {"externalRef": "A-9"}) == ProviderReply(external_ref="A-9")
    assert not parse_provider_reply("a", {"external_ref": "A-9", "status": "queued"}).is_inline

    with pytest.raises(ProviderFailure) as excinfo:
        parse_provider_reply("a", {"status": "error", "errorDetail": "bad input"})
    assert excinfo.value.detail == "bad input"
    with pytest.raises(ProviderFailure):
        parse_provider_reply("a", {"status": "done"})


def test_provider_submit_posts_job_payload_with_bearer_key() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"external_ref": "A-1"}, request=request)

    async def run() -> ProviderReply:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = ProviderClient("provider_a", "http://provider-a.test/", api_key="secret", client=client)
            return await provider.submit(job_id="job-1", input_ref="goal:P1:3", params={"minute": 3})

    reply = asyncio.run(run())
    assert reply.external_ref == "A-1"
    assert str(seen[0].url) == "http://provider-a.test/jobs"
    assert seen[0].headers["authorization"] == "Bearer secret"
    assert json.loads(seen[0].content) == {
        "job_id": "job-1",
        "provider": "provider_a",
        "input_ref": "goal:P1:3",
        "params": {"minute": 3},
    }


@pytest.mark.parametrize(
    ("handler", "detail"),
    [
        (lambda request: httpx.Response(502, request=request), "HTTP 502"),
        (_refuse_connection, "transport error: ConnectError"),
        (lambda request: httpx.Response(200, text="not json", request=request), "reply carried neither output_ref nor external_ref"),
    ],
)
def test_provider_errors_surface_as_provider_failure(handler: Any, detail: str) -> None:
    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await ProviderClient("provider_b", "http://provider-b.test", client=client).submit(
                job_id="job-1", input_ref="ref", params={}
            )

    with pytest.raises(ProviderFailure) as excinfo:
        asyncio.run(run())
    assert excinfo.value.provider == "provider_b"
    assert excinfo.value.detail == detail


def test_publish_returns_url_and_sends_idempotency_key() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"url": " https://videos.example.com/v/9 "}, request=request)

    async def run() -> str:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            publisher = PublishClient("http://host.test/uploads", client=client)
            return await publisher.publish(
                job_id="job-9",
                output_ref="clip-9",
                metadata={"title": "t", "description": "d", "visibility": "public"},
            )

    assert asyncio.run(run()) == "https://videos.example.com/v/9"
    assert seen[0].headers["idempotency-key"] == "publish:job-9"


@pytest.mark.parametrize(
    "response",
    [httpx.Response(500), httpx.Response(200, json={"id": 1}), httpx.Response(200, text="<html>")],
)
def test_publish_failures(response: httpx.Response) -> None:
    async def run() -> None:
        transport = httpx.MockTransport(lambda request: response)
        async with httpx.AsyncClient(transport=transport) as client:
            await PublishClient("http://host.test/uploads", client=client).publish(
                job_id="job-1", output_ref="clip-1", metadata={}
            )

    with pytest.raises(PublishFailure):
        asyncio.run(run())


def test_webhook_notifier_retries_then_delivers() -> None:
    statuses = [500, 503, 200]
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(statuses[len(calls) - 1], request=request)

    async def run() -> bool:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = WebhookNotifier("http://relay.test/hook", attempts=3, backoff_base_seconds=0, client=client)
            return await notifier.notify({"job_id": "job-1"}, idempotency_key="fanout:job-1")

    assert asyncio.run(run()) is True
    assert len(calls) == 3
    assert all(call.headers["idempotency-key"] == "fanout:job-1" for call in calls)


def test_webhook_notifier_gives_up_without_raising() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async def run() -> bool:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = WebhookNotifier("http://relay.test/hook", attempts=2, backoff_base_seconds=0, client=client)
            return await notifier.notify({"job_id": "job-1"})

    assert asyncio.run(run()) is False


def test_webhook_notifier_without_url_is_disabled() -> None:
    notifier = WebhookNotifier(None)
    assert not notifier.enabled
    assert asyncio.run(notifier.notify({"job_id": "job-1"})) is False
