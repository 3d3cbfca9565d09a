from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from clipflow.core.config import Settings, get_settings
from clipflow.services.callbacks import CallbackRouter
from clipflow.services.coordinator import ProviderFallbackCoordinator
from clipflow.services.idempotency import IdempotencyGuard
from clipflow.services.pipeline import JobPipeline
from clipflow.services.providers import ProviderClient
from clipflow.services.publisher import PublishClient, WebhookNotifier
from clipflow.services.rate_limit import PROVIDER_EGRESS_KEY, PUBLISH_EGRESS_KEY, RateLimiter
from clipflow.services.repository import get_repository


@dataclass(slots=True)
class Runtime:
    repository: Any
    limiter: RateLimiter
    pipeline: JobPipeline
    router: CallbackRouter


def build_runtime(settings: Settings, repository: Any) -> Runtime:
    limiter = RateLimiter(
        repository,
        default_limit=settings.rate_limit_default_limit,
        default_window_seconds=settings.rate_limit_default_window_seconds,
        overrides={
            PROVIDER_EGRESS_KEY: (settings.provider_egress_limit, settings.provider_egress_window_seconds),
            PUBLISH_EGRESS_KEY: (settings.publish_egress_limit, settings.publish_egress_window_seconds),
        },
    )
    guard = IdempotencyGuard(
        repository,
        attribute_keys=settings.fingerprint_attribute_keys,
        ttl_seconds=settings.idempotency_ttl_seconds,
    )
    coordinator = ProviderFallbackCoordinator(
        repository,
        primary=ProviderClient(
            settings.primary_provider_name,
            settings.primary_provider_url,
            api_key=settings.primary_provider_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
        ),
        fallback=ProviderClient(
            settings.fallback_provider_name,
            settings.fallback_provider_url,
            api_key=settings.fallback_provider_api_key,
            timeout_seconds=settings.provider_timeout_seconds,
        ),
        callback_url=f"{settings.public_base_url.rstrip('/')}/callbacks",
    )
    pipeline = JobPipeline(
        repository,
        guard=guard,
        limiter=limiter,
        coordinator=coordinator,
        publisher=PublishClient(
            settings.publish_url,
            api_key=settings.publish_api_key,
            timeout_seconds=settings.publish_timeout_seconds,
        ),
        fanout=WebhookNotifier(
            settings.fanout_webhook_url,
            attempts=settings.fanout_attempts,
            backoff_base_seconds=settings.fanout_backoff_base_seconds,
        ),
        alerts=WebhookNotifier(
            settings.alert_webhook_url,
            attempts=settings.fanout_attempts,
            backoff_base_seconds=settings.fanout_backoff_base_seconds,
        ),
        publish_max_retries=settings.publish_max_retries,
        publish_retry_base_seconds=settings.publish_retry_base_seconds,
        publish_retry_max_seconds=settings.publish_retry_max_seconds,
        processing_timeout_seconds=settings.processing_timeout_seconds,
        publish_timeout_seconds=settings.publish_timeout_sweep_seconds,
        sweep_batch_size=settings.sweep_batch_size,
        dispatch_grace_seconds=settings.dispatch_grace_seconds,
        default_visibility=settings.default_visibility,
    )
    return Runtime(
        repository=repository,
        limiter=limiter,
        pipeline=pipeline,
        router=CallbackRouter(coordinator, pipeline),
    )


@lru_cache
def get_runtime() -> Runtime:
    return build_runtime(get_settings(), get_repository())
