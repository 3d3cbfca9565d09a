from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable
from typing import Any

from clipflow.services.errors import EventValidationError

KIND_RE = re.compile(r"^[a-z][a-z0-9_]*$")
MAX_MINUTE = 200
MAX_EXPLICIT_KEY_LENGTH = 200
EXPLICIT_KEY_PREFIX = "explicit:"


def canonicalize_event(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate an inbound event and return its canonical form.

    Strings are trimmed with inner whitespace collapsed, ``kind`` and attribute
    keys are lower-cased and integral floats become ints, so that cosmetic
    drift between two submissions of the same event does not change its
    fingerprint.
    """
    kind = _as_text(raw.get("kind"))
    if kind is None:
        raise EventValidationError("kind is required")
    kind = kind.lower()
    if not KIND_RE.match(kind):
        raise EventValidationError(f"kind must match {KIND_RE.pattern}")

    subject_id = _as_text(raw.get("subject_id"))
    if subject_id is None:
        raise EventValidationError("subject_id is required")

    minute = raw.get("occurred_at_minute")
    if isinstance(minute, bool) or not isinstance(minute, int):
        raise EventValidationError("occurred_at_minute must be an integer")
    if minute < 0 or minute > MAX_MINUTE:
        raise EventValidationError(f"occurred_at_minute must be between 0 and {MAX_MINUTE}")

    raw_attributes = raw.get("attributes")
    if raw_attributes is None:
        raw_attributes = {}
    if not isinstance(raw_attributes, dict):
        raise EventValidationError("attributes must be an object")

    attributes: dict[str, Any] = {}
    for raw_key, value in raw_attributes.items():
        key = _as_text(raw_key)
        if key is None:
            raise EventValidationError("attribute keys must be non-empty strings")
        key = key.lower()
        if key in attributes:
            raise EventValidationError(f"duplicate attribute key after normalization: {key}")
        attributes[key] = _normalize_value(value)

    return {
        "kind": kind,
        "subject_id": subject_id,
        "occurred_at_minute": minute,
        "attributes": attributes,
    }


def fingerprint(event: dict[str, Any], attribute_keys: Iterable[str]) -> str:
    """Stable sha256 over the semantically significant fields of a canonical event."""
    wanted = {key.strip().lower() for key in attribute_keys if key.strip()}
    attributes = event.get("attributes") or {}
    semantic = {
        "kind": event["kind"],
        "subject_id": event["subject_id"],
        "occurred_at_minute": event["occurred_at_minute"],
        "attributes": {key: value for key, value in attributes.items() if key in wanted},
    }
    encoded = json.dumps(semantic, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def explicit_idempotency_key(raw: str) -> str:
    value = raw.strip()
    if not value:
        raise EventValidationError("Idempotency-Key must not be blank")
    if len(value) > MAX_EXPLICIT_KEY_LENGTH:
        raise EventValidationError(f"Idempotency-Key longer than {MAX_EXPLICIT_KEY_LENGTH} characters")
    return f"{EXPLICIT_KEY_PREFIX}{value}"


def _as_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    collapsed = " ".join(value.split())
    return collapsed or None


def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split())
    if isinstance(value, bool) or value is None or isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise EventValidationError("attribute values must be finite numbers")
        return int(value) if value.is_integer() else value
    if isinstance(value, list):
        return [_normalize_value(item) for item in value]
    if isinstance(value, dict):
        normalized: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise EventValidationError("nested attribute keys must be strings")
            normalized[key.strip()] = _normalize_value(item)
        return normalized
    raise EventValidationError(f"unsupported attribute value type: {type(value).__name__}")
