from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from clipflow.services.errors import PublishFailure

logger = logging.getLogger(__name__)


class PublishClient:
    """Hands a finished clip to the hosting platform and returns its permanent URL."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client

    async def publish(self, *, job_id: str, output_ref: str, metadata: dict[str, str]) -> str:
        payload = {"job_id": job_id, "output_ref": output_ref, "metadata": metadata}
        headers = {**self.headers, "Idempotency-Key": f"publish:{job_id}"}
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise PublishFailure(f"transport error: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            raise PublishFailure(f"HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise PublishFailure("response was not JSON") from exc

        url = body.get("url") if isinstance(body, dict) else None
        if not isinstance(url, str) or not url.strip():
            raise PublishFailure("response carried no url")
        return url.strip()


class WebhookNotifier:
    """Fire-and-forget JSON webhook with bounded exponential backoff.

    Used for fan-out to the distribution relay and for failure alerts. A
    delivery that still fails after the last attempt is logged, never raised.
    """

    def __init__(
        self,
        url: str | None,
        *,
        attempts: int = 3,
        backoff_base_seconds: float = 0.4,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.attempts = max(1, attempts)
        self.backoff_base_seconds = max(0.0, backoff_base_seconds)
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def notify(self, payload: dict[str, Any], *, idempotency_key: str | None = None) -> bool:
        if not self.url:
            return False
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}

        if self._client is not None:
            return await self._deliver(self._client, payload, headers)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._deliver(client, payload, headers)

    async def _deliver(self, client: httpx.AsyncClient, payload: dict[str, Any], headers: dict[str, str]) -> bool:
        last_error = "no attempt made"
        for attempt in range(self.attempts):
            try:
                response = await client.post(self.url, json=payload, headers=headers)
                if 200 <= response.status_code < 300:
                    return True
                last_error = f"HTTP {response.status_code}"
            except httpx.HTTPError as exc:
                last_error = f"transport error: {exc.__class__.__name__}"

            if attempt < self.attempts - 1:
                await asyncio.sleep(self.backoff_base_seconds * (2**attempt))

        logger.warning("webhook delivery failed url=%s attempts=%s error=%s", self.url, self.attempts, last_error)
        return False
