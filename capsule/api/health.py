"""
Health check endpoints.
"""

import time
from typing import Any, Optional

from fastapi import APIRouter, Query, Request

from capsule import __version__
from capsule.api.deps import get_orchestrator
from capsule.lib.errors import BackendUnavailableError
from capsule.lib.logger import get_log_buffer

router = APIRouter()

# Server start time for uptime calculation
_start_time = time.time()


@router.get("/health")
async def health_check(
    request: Request,
    detailed: bool = Query(False, description="Include container engine details"),
) -> dict[str, Any]:
    """
    Health check endpoint.

    Reports whether the container engine answers; with detailed=true also
    returns engine info.
    """
    orchestrator = get_orchestrator(request)
    docker_ok = await orchestrator.health_check()

    basic = {
        "status": "ok" if docker_ok else "degraded",
        "timestamp": int(time.time() * 1000),
        "docker": {"available": docker_ok},
    }

    if not detailed:
        return basic

    docker: dict[str, Any] = {"available": docker_ok}
    if docker_ok:
        try:
            info = await orchestrator.get_info()
            docker.update(info.model_dump(by_alias=True))
        except BackendUnavailableError as e:
            docker["error"] = str(e)

    return {
        **basic,
        "docker": docker,
        "uptime": time.time() - _start_time,
        "version": __version__,
    }


@router.get("/logs")
async def recent_logs(
    limit: int = Query(100, ge=1, le=1000),
    level: Optional[str] = Query(None, description="Only entries at this level, e.g. WARNING"),
) -> dict[str, Any]:
    """Recent server log entries from the in-memory buffer."""
    return {"logs": get_log_buffer().get_recent(limit, level)}
