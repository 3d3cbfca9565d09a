from enum import Enum


class JobState(str, Enum):
    CREATED = "CREATED"
    DISPATCHED = "DISPATCHED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    PUBLISHING = "PUBLISHING"
    PUBLISHED = "PUBLISHED"
    PUBLISH_FAILED = "PUBLISH_FAILED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({JobState.PUBLISHED, JobState.FAILED})
DISPATCHABLE_STATES = frozenset({JobState.CREATED, JobState.PROCESSING_FAILED})
AWAITING_PROVIDER_STATES = frozenset({JobState.DISPATCHED, JobState.PROCESSING})
PUBLISHABLE_STATES = frozenset({JobState.PROCESSED, JobState.PUBLISH_FAILED})

# Edges the pipeline may take; anything else is a bug.
ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.CREATED: frozenset({JobState.DISPATCHED}),
    JobState.DISPATCHED: frozenset({JobState.PROCESSING, JobState.PROCESSED, JobState.PROCESSING_FAILED, JobState.FAILED}),
    JobState.PROCESSING: frozenset({JobState.PROCESSED, JobState.PROCESSING_FAILED, JobState.FAILED}),
    JobState.PROCESSING_FAILED: frozenset({JobState.DISPATCHED}),
    JobState.PROCESSED: frozenset({JobState.PUBLISHING}),
    JobState.PUBLISHING: frozenset({JobState.PUBLISHED, JobState.PUBLISH_FAILED, JobState.FAILED}),
    JobState.PUBLISH_FAILED: frozenset({JobState.PUBLISHING, JobState.FAILED}),
    JobState.PUBLISHED: frozenset(),
    JobState.FAILED: frozenset(),
}


def is_terminal(state: str) -> bool:
    value = state.value if isinstance(state, JobState) else state
    return value in {item.value for item in TERMINAL_STATES}
