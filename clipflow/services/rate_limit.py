from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from clipflow.services.errors import RateLimited

PROVIDER_EGRESS_KEY = "provider:egress"
PUBLISH_EGRESS_KEY = "publish:egress"


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Fixed-window counter per key, evaluated with one atomic store write."""

    def __init__(
        self,
        repository: Any,
        *,
        default_limit: int,
        default_window_seconds: int,
        overrides: dict[str, tuple[int | None, int | None]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.default_limit = max(1, default_limit)
        self.default_window_seconds = max(1, default_window_seconds)
        self.overrides = overrides or {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(
        self,
        key: str,
        limit: int | None = None,
        window_seconds: int | None = None,
        now: datetime | None = None,
    ) -> RateLimitDecision:
        resolved_limit, resolved_window = self._resolve(key, limit, window_seconds)
        current = now or self._clock()
        count, window_start = await self.repository.increment_rate_counter(
            key=key,
            window_seconds=resolved_window,
            now=current,
        )
        allowed = count <= resolved_limit
        reset_at = window_start + timedelta(seconds=resolved_window)
        return RateLimitDecision(
            allowed=allowed,
            remaining=resolved_limit - count if allowed else 0,
            reset_seconds=max(0, math.ceil((reset_at - current).total_seconds())),
        )

    async def acquire(self, key: str, *, now: datetime | None = None) -> RateLimitDecision:
        decision = await self.evaluate(key, now=now)
        if not decision.allowed:
            raise RateLimited(key, decision.reset_seconds)
        return decision

    def _resolve(self, key: str, limit: int | None, window_seconds: int | None) -> tuple[int, int]:
        override_limit, override_window = self.overrides.get(key, (None, None))
        resolved_limit = limit if limit is not None and limit > 0 else override_limit or self.default_limit
        resolved_window = (
            window_seconds
            if window_seconds is not None and window_seconds > 0
            else override_window or self.default_window_seconds
        )
        return resolved_limit, resolved_window
