import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Response, status

from clipflow.core.security import get_machine_principal, require_scopes
from clipflow.schemas.events import EventAccepted, EventIn
from clipflow.services.errors import EventValidationError
from clipflow.services.pipeline import SUBMISSION_ACCEPTED, SUBMISSION_DUPLICATE, JobPipeline
from clipflow.services.repository import RepositoryUnavailableError
from clipflow.services.runtime import get_runtime

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_event(
    payload: EventIn,
    response: Response,
    background_tasks: BackgroundTasks,
    principal=Depends(get_machine_principal),
    runtime=Depends(get_runtime),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> EventAccepted:
    require_scopes(principal, {"events:write"})

    try:
        submission = await runtime.pipeline.submit(payload.model_dump(), explicit_key=idempotency_key)
    except EventValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    job_id = submission.job["id"] if submission.job else None
    if submission.status == SUBMISSION_ACCEPTED and job_id:
        background_tasks.add_task(_dispatch, runtime.pipeline, job_id)
    elif submission.status == SUBMISSION_DUPLICATE:
        response.status_code = status.HTTP_200_OK

    return EventAccepted(
        status=submission.status,
        idempotency_key=submission.key,
        job_id=job_id or (submission.result or {}).get("job_id"),
        result=submission.result,
    )


async def _dispatch(pipeline: JobPipeline, job_id: str) -> None:
    # The sweep retries dispatch for jobs left in CREATED.
    try:
        await pipeline.dispatch(job_id)
    except Exception:
        logger.exception("background dispatch failed job_id=%s", job_id)
