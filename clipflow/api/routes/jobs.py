from fastapi import APIRouter, Depends, HTTPException, status

from clipflow.core.security import get_machine_principal, require_scopes
from clipflow.schemas.jobs import JobListResponse, JobOut, JobStateName, SweepOut
from clipflow.services.repository import RepositoryNotFoundError, RepositoryUnavailableError
from clipflow.services.runtime import get_runtime

router = APIRouter()


@router.get("", response_model=JobListResponse)
async def list_jobs(
    principal=Depends(get_machine_principal),
    runtime=Depends(get_runtime),
    state: JobStateName | None = None,
    limit: int = 50,
    offset: int = 0,
) -> JobListResponse:
    require_scopes(principal, {"jobs:read"})

    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    try:
        rows = await runtime.repository.list_jobs(state=state, limit=bounded_limit, offset=bounded_offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobListResponse(items=[JobOut(**row) for row in rows], limit=bounded_limit, offset=bounded_offset)


@router.get("/{job_id}", response_model=JobOut)
async def get_job(
    job_id: str,
    principal=Depends(get_machine_principal),
    runtime=Depends(get_runtime),
) -> JobOut:
    require_scopes(principal, {"jobs:read"})

    try:
        row = await runtime.repository.get_job(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobOut(**row)


@router.post("/sweep", response_model=SweepOut)
async def sweep_jobs(
    principal=Depends(get_machine_principal),
    runtime=Depends(get_runtime),
) -> SweepOut:
    require_scopes(principal, {"jobs:sweep"})

    try:
        report = await runtime.pipeline.sweep()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SweepOut(
        stalled_failed=report.stalled_failed,
        dispatched=report.dispatched,
        published=report.published,
        errors=report.errors,
    )
