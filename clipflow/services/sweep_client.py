from __future__ import annotations

from typing import Any

import httpx


class SweepClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self._client = client

    async def sweep(self) -> dict[str, Any]:
        if self._client is not None:
            return await self._post_sweep(self._client)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await self._post_sweep(client)

    async def _post_sweep(self, client: httpx.AsyncClient) -> dict[str, Any]:
        response = await client.post(f"{self.base_url}/jobs/sweep", headers=self.headers)
        response.raise_for_status()
        payload = response.json()
        return {
            "stalled_failed": int(payload.get("stalled_failed", 0)),
            "dispatched": int(payload.get("dispatched", 0)),
            "published": int(payload.get("published", 0)),
            "errors": list(payload.get("errors") or []),
        }
