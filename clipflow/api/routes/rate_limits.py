from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException, status

from clipflow.core.security import get_machine_principal, require_scopes
from clipflow.schemas.rate_limits import RateLimitDecisionOut, RateLimitRequest
from clipflow.services.repository import RepositoryUnavailableError
from clipflow.services.runtime import get_runtime

router = APIRouter()


@router.post("/evaluate", response_model=RateLimitDecisionOut)
async def evaluate_rate_limit(
    payload: RateLimitRequest,
    principal=Depends(get_machine_principal),
    runtime=Depends(get_runtime),
) -> RateLimitDecisionOut:
    require_scopes(principal, {"rate_limits:write"})

    now = payload.now
    if now is not None and now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    try:
        decision = await runtime.limiter.evaluate(
            payload.key,
            limit=payload.limit,
            window_seconds=payload.window_seconds,
            now=now,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RateLimitDecisionOut(
        key=payload.key,
        allowed=decision.allowed,
        remaining=decision.remaining,
        reset_seconds=decision.reset_seconds,
    )
