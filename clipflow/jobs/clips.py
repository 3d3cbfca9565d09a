from __future__ import annotations

from typing import Any

DEFAULT_CLIP_SECONDS = 30
VISIBILITIES = ("public", "unlisted", "private")

# Seconds of footage kept before and after the event minute.
CLIP_BUFFERS: dict[str, tuple[int, int]] = {
    "goal": (10, 20),
    "score": (10, 20),
    "card": (5, 10),
    "big_chance": (10, 15),
}


def build_clip_params(event: dict[str, Any]) -> dict[str, Any]:
    kind = event.get("kind") or ""
    attributes = _as_dict(event.get("attributes"))
    minute = _as_int(event.get("occurred_at_minute"), default=0)

    pre_seconds, post_seconds = CLIP_BUFFERS.get(kind, (0, DEFAULT_CLIP_SECONDS))
    anchor_seconds = minute * 60
    params: dict[str, Any] = {
        "kind": kind,
        "subject_id": event.get("subject_id"),
        "minute": minute,
        "clip_start_seconds": max(0, anchor_seconds - pre_seconds),
        "clip_end_seconds": anchor_seconds + post_seconds,
    }
    template = attributes.get("template")
    if isinstance(template, str) and template:
        params["template"] = template
    return params


def build_input_ref(event: dict[str, Any]) -> str:
    attributes = _as_dict(event.get("attributes"))
    source_ref = attributes.get("source_ref")
    if isinstance(source_ref, str) and source_ref:
        return source_ref
    return f"{event.get('kind')}:{event.get('subject_id')}:{event.get('occurred_at_minute')}"


def build_publish_metadata(event: dict[str, Any], *, default_visibility: str = "unlisted") -> dict[str, str]:
    attributes = _as_dict(event.get("attributes"))
    kind = str(event.get("kind") or "event")
    minute = event.get("occurred_at_minute")
    subject_id = event.get("subject_id")

    title = attributes.get("title")
    if not isinstance(title, str) or not title:
        title = f"{kind.replace('_', ' ').title()} - {subject_id} {minute}'"
    description = attributes.get("description")
    if not isinstance(description, str) or not description:
        description = f"{kind.replace('_', ' ').title()} by {subject_id} in minute {minute}"

    return {
        "title": title,
        "description": description,
        "visibility": normalize_visibility(attributes.get("visibility"), default=default_visibility),
    }


def normalize_visibility(value: Any, *, default: str = "unlisted") -> str:
    fallback = default if default in VISIBILITIES else "unlisted"
    if not isinstance(value, str):
        return fallback
    lowered = value.strip().lower()
    return lowered if lowered in VISIBILITIES else fallback


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_int(value: Any, *, default: int) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default
