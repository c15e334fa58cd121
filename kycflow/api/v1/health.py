"""Liveness check."""

from __future__ import annotations

import time

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter(prefix="/health", tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    worker_running: bool
    queued_jobs: int


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Returns 200 while the process can serve requests."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    worker = getattr(request.app.state, "worker", None)

    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(time.time() - start_time, 2),
        worker_running=worker is not None and worker.is_running,
        queued_jobs=worker.pending_jobs if worker is not None else 0,
    )
