from fastapi import APIRouter, Depends

from clipflow.core.security import get_machine_principal, require_scopes
from clipflow.schemas.callbacks import CallbackAck, ProviderCallback
from clipflow.services.coordinator import ProviderOutcome
from clipflow.services.runtime import get_runtime

router = APIRouter()


@router.post("", response_model=CallbackAck)
async def receive_callback(
    payload: ProviderCallback,
    principal=Depends(get_machine_principal),
    runtime=Depends(get_runtime),
) -> CallbackAck:
    require_scopes(principal, {"callbacks:write"})

    if payload.status == "done" and payload.output_ref:
        outcome = ProviderOutcome.done(payload.output_ref)
    elif payload.status == "done":
        outcome = ProviderOutcome.failed("callback reported done without output_ref")
    else:
        outcome = ProviderOutcome.failed(payload.error_detail or "provider reported an error")

    receipt = await runtime.router.handle(payload.external_ref, outcome)
    return CallbackAck(matched=receipt.matched, transitioned=receipt.transitioned, job_id=receipt.job_id)
