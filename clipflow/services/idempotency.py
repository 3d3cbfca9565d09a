from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from clipflow.core.fingerprint import explicit_idempotency_key, fingerprint

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Admission:
    accepted: bool
    key: str
    existing_result: dict[str, Any] | None = None


class IdempotencyGuard:
    """Admits each event fingerprint once and remembers its terminal result."""

    def __init__(
        self,
        repository: Any,
        *,
        attribute_keys: Iterable[str],
        ttl_seconds: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.attribute_keys = tuple(attribute_keys)
        self.ttl_seconds = max(1, ttl_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def key_for(self, event: dict[str, Any], explicit_key: str | None = None) -> str:
        if explicit_key is not None:
            return explicit_idempotency_key(explicit_key)
        return fingerprint(event, self.attribute_keys)

    async def admit(self, event: dict[str, Any], explicit_key: str | None = None) -> Admission:
        key = self.key_for(event, explicit_key)
        now = self._clock()
        inserted, record = await self.repository.insert_idempotency_record(
            key=key,
            now=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        if inserted:
            return Admission(accepted=True, key=key)

        existing = record.get("result_summary")
        if existing is None:
            logger.info("duplicate event still in flight key=%s", key)
        else:
            logger.info("duplicate event short-circuited key=%s", key)
        return Admission(accepted=False, key=key, existing_result=existing)

    async def record_result(self, key: str, summary: dict[str, Any]) -> bool:
        stored = await self.repository.set_idempotency_result(key=key, summary=summary)
        if not stored:
            logger.debug("idempotency result already recorded key=%s", key)
        return stored

    async def release(self, key: str) -> bool:
        """Forget a pending admission so the event can be submitted again.

        Records that already hold a result are kept.
        """
        released = await self.repository.delete_idempotency_record(key)
        if released:
            logger.warning("pending admission released key=%s", key)
        return released
