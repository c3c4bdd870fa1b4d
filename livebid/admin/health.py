"""Liveness for load balancers and the on-call dashboard."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    state = request.app.state
    started = getattr(state, "start_time", None)
    uptime = int((datetime.now(timezone.utc) - started).total_seconds()) if started else 0
    scheduler_running = state.scheduler.running
    return {
        "status": "healthy" if scheduler_running else "degraded",
        "uptime_seconds": uptime,
        "version": request.app.version,
        "storage_backend": state.server_config.storage.backend,
        "distribution_backend": state.server_config.distribution.backend,
        "scheduler_running": scheduler_running,
        "subscribers": state.hub.subscriber_count(),
    }
