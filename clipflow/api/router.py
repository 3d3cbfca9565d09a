from fastapi import APIRouter

from clipflow.api.routes import callbacks, events, health, jobs, rate_limits

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(events.router, prefix="/events", tags=["ingest"])
api_router.include_router(callbacks.router, prefix="/callbacks", tags=["provider"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["operator"])
api_router.include_router(rate_limits.router, prefix="/rate-limits", tags=["operator"])
