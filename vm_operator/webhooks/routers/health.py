"""
Health endpoint.
"""

import time
from typing import List

from fastapi import APIRouter, Request
from pydantic import BaseModel

from vm_operator import __version__

router = APIRouter(tags=["health"])

# Track startup time
_startup_time = time.time()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    uptime_seconds: int
    version: str
    validators: List[str]
    failure_policy: str


@router.get("/v1/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Health check endpoint.

    Returns webhook server uptime and the validators it serves.
    """
    state = request.app.state
    return HealthResponse(
        status="healthy",
        uptime_seconds=int(time.time() - _startup_time),
        version=__version__,
        validators=sorted(state.validators) + ["StorageQuota"],
        failure_policy=state.failure_policy,
    )
