from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from clipflow.services.callbacks import CallbackRouter
from clipflow.services.coordinator import ProviderFallbackCoordinator
from clipflow.services.idempotency import IdempotencyGuard
from clipflow.services.pipeline import JobPipeline
from clipflow.services.providers import ProviderClient
from clipflow.services.publisher import PublishClient, WebhookNotifier
from clipflow.services.rate_limit import RateLimiter
from clipflow.services.repository import InMemoryRepository
from clipflow.services.runtime import Runtime


class Clock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class ScriptedEndpoint:
    """Replies from a queue of canned responses; the last one repeats."""

    replies: list[Any]
    requests: list[dict[str, Any]] = field(default_factory=list)
    headers: list[httpx.Headers] = field(default_factory=list)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content) if request.content else {})
        self.headers.append(request.headers)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, int):
            return httpx.Response(reply, request=request)
        if isinstance(reply, Exception):
            raise reply
        return httpx.Response(200, json=reply, request=request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@dataclass
class Harness:
    clock: Clock
    repository: InMemoryRepository
    guard: IdempotencyGuard
    limiter: RateLimiter
    coordinator: ProviderFallbackCoordinator
    pipeline: JobPipeline
    router: CallbackRouter
    primary: ScriptedEndpoint
    fallback: ScriptedEndpoint
    publish: ScriptedEndpoint
    fanout: ScriptedEndpoint
    alerts: ScriptedEndpoint

    @property
    def runtime(self) -> Runtime:
        return Runtime(repository=self.repository, limiter=self.limiter, pipeline=self.pipeline, router=self.router)


@pytest.fixture
def make_harness() -> Callable[..., Harness]:
    def build(
        *,
        primary: list[Any] | None = None,
        fallback: list[Any] | None = None,
        publish: list[Any] | None = None,
        provider_limit: int | None = None,
        publish_limit: int | None = None,
        **pipeline_options: Any,
    ) -> Harness:
        clock = Clock()
        repository = InMemoryRepository()
        endpoints = {
            "primary": ScriptedEndpoint(primary or [{"status": "done", "output_ref": "clip-a"}]),
            "fallback": ScriptedEndpoint(fallback or [{"status": "done", "output_ref": "clip-b"}]),
            "publish": ScriptedEndpoint(publish or [{"url": "https://videos.example.com/v/1"}]),
            "fanout": ScriptedEndpoint([{}]),
            "alerts": ScriptedEndpoint([{}]),
        }
        limiter = RateLimiter(
            repository,
            default_limit=1000,
            default_window_seconds=60,
            overrides={
                "provider:egress": (provider_limit, None),
                "publish:egress": (publish_limit, None),
            },
            clock=clock,
        )
        guard = IdempotencyGuard(
            repository,
            attribute_keys=["match_id", "period", "sequence"],
            ttl_seconds=86400,
            clock=clock,
        )
        coordinator = ProviderFallbackCoordinator(
            repository,
            primary=ProviderClient("provider_a", "http://provider-a.test", client=endpoints["primary"].client()),
            fallback=ProviderClient("provider_b", "http://provider-b.test", client=endpoints["fallback"].client()),
            callback_url="http://clipflow.test/callbacks",
            clock=clock,
        )
        options: dict[str, Any] = {
            "publish_retry_base_seconds": 30,
            "publish_retry_max_seconds": 900,
            "processing_timeout_seconds": 900,
            "publish_timeout_seconds": 600,
            "dispatch_grace_seconds": 30,
        }
        options.update(pipeline_options)
        pipeline = JobPipeline(
            repository,
            guard=guard,
            limiter=limiter,
            coordinator=coordinator,
            publisher=PublishClient("http://host.test/uploads", client=endpoints["publish"].client()),
            fanout=WebhookNotifier(
                "http://relay.test/hook",
                attempts=1,
                backoff_base_seconds=0,
                client=endpoints["fanout"].client(),
            ),
            alerts=WebhookNotifier(
                "http://alerts.test/hook",
                attempts=1,
                backoff_base_seconds=0,
                client=endpoints["alerts"].client(),
            ),
            clock=clock,
            **options,
        )
        return Harness(
            clock=clock,
            repository=repository,
            guard=guard,
            limiter=limiter,
            coordinator=coordinator,
            pipeline=pipeline,
            router=CallbackRouter(coordinator, pipeline),
            primary=endpoints["primary"],
            fallback=endpoints["fallback"],
            publish=endpoints["publish"],
            fanout=endpoints["fanout"],
            alerts=endpoints["alerts"],
        )

    return build
