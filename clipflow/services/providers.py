from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from clipflow.services.errors import ProviderFailure


@dataclass(slots=True)
class ProviderReply:
    output_ref: str | None = None
    external_ref: str | None = None

    @property
    def is_inline(self) -> bool:
        return self.external_ref is None


class ProviderClient:
    """Submits clip jobs to one processing provider over HTTP."""

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 20.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client

    async def submit(self, *, job_id: str, input_ref: str, params: dict[str, Any]) -> ProviderReply:
        payload = {
            "job_id": job_id,
            "provider": self.name,
            "input_ref": input_ref,
            "params": params,
        }
        try:
            if self._client is not None:
                response = await self._client.post(f"{self.base_url}/jobs", json=payload, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(f"{self.base_url}/jobs", json=payload, headers=self.headers)
        except httpx.HTTPError as exc:
            raise ProviderFailure(self.name, f"transport error: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            raise ProviderFailure(self.name, f"HTTP {response.status_code}")
        return parse_provider_reply(self.name, _json_object(response))


def parse_provider_reply(provider: str, body: dict[str, Any]) -> ProviderReply:
    status = (_as_text(body.get("status")) or "").lower()
    output_ref = _as_text(body.get("output_ref")) or _as_text(body.get("outputRef"))
    external_ref = _as_text(body.get("external_ref")) or _as_text(body.get("externalRef"))

    if status == "error":
        detail = _as_text(body.get("error_detail")) or _as_text(body.get("errorDetail"))
        raise ProviderFailure(provider, detail or "provider reported an error")
    if status == "done" and output_ref:
        return ProviderReply(output_ref=output_ref)
    if external_ref:
        return ProviderReply(external_ref=external_ref)
    raise ProviderFailure(provider, "reply carried neither output_ref nor external_ref")


def _json_object(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        decoded = response.json()
    except ValueError:
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
