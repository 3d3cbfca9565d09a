from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base pipeline error."""


class EventValidationError(PipelineError):
    """Raised when an inbound event is malformed; nothing has been written yet."""


class DuplicateSuppressed(PipelineError):
    """Raised when a job would be created for an event that was not admitted.

    Not a failure: the caller short-circuits with ``existing_result``.
    """

    def __init__(self, key: str, existing_result: dict[str, Any] | None = None) -> None:
        super().__init__(f"duplicate event suppressed key={key}")
        self.key = key
        self.existing_result = existing_result


class ProviderFailure(PipelineError):
    """Raised when a processing provider rejects or fails a submission."""

    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(f"{provider}: {detail}")
        self.provider = provider
        self.detail = detail


class PublishFailure(PipelineError):
    """Raised when the hosting platform handoff fails."""


class CallbackMismatch(PipelineError):
    """Raised when a callback's external_ref matches no provider request."""

    def __init__(self, external_ref: str) -> None:
        super().__init__(f"no provider request for external_ref={external_ref}")
        self.external_ref = external_ref


class RateLimited(PipelineError):
    """Raised when an egress slot is denied; the caller must defer."""

    def __init__(self, key: str, reset_seconds: int) -> None:
        super().__init__(f"rate limited key={key} reset_seconds={reset_seconds}")
        self.key = key
        self.reset_seconds = reset_seconds
