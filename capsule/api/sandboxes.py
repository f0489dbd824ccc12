"""Sandbox lifecycle API endpoints."""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from capsule.api.deps import (
    check_sandbox_access,
    current_user,
    get_orchestrator,
    get_sync_engine,
)
from capsule.lib.errors import ValidationError
from capsule.models.sandbox import (
    ExecOptions,
    LogOptions,
    Sandbox,
    SandboxConfig,
    SandboxFilter,
    SandboxStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sandboxes", tags=["sandboxes"])


class ExecRequest(BaseModel):
    """Request body for running a command in a sandbox."""

    command: list[str] = Field(min_length=1, description="Argv, not a shell string")
    working_dir: Optional[str] = Field(None, alias="workingDir")
    env: dict[str, str] = Field(default_factory=dict)
    user: Optional[str] = None
    timeout: float = Field(60.0, gt=0, le=3600)

    model_config = {"populate_by_name": True}


def _dump(sandbox: Sandbox) -> dict[str, Any]:
    return sandbox.model_dump(by_alias=True, mode="json")


def _parse_labels(values: Optional[list[str]]) -> dict[str, str]:
    labels: dict[str, str] = {}
    for value in values or []:
        key, sep, label_value = value.partition("=")
        if not sep or not key:
            raise ValidationError(f"Label filter must be key=value: {value}")
        labels[key] = label_value
    return labels


async def _after_start(request: Request, sandbox: Sandbox) -> None:
    if request.app.state.settings.live_sync_enabled and sandbox.status == SandboxStatus.RUNNING:
        await get_sync_engine(request).start_live_sync(sandbox.id)


@router.get("")
async def list_sandboxes(
    request: Request,
    status: Optional[list[SandboxStatus]] = Query(None, description="Filter by status (repeatable)"),
    name: Optional[str] = Query(None, description="Case-insensitive name substring"),
    label: Optional[list[str]] = Query(None, description="key=value label filter (repeatable)"),
) -> dict[str, Any]:
    """List sandboxes visible to the caller, statuses refreshed from the backend."""
    sandbox_filter = SandboxFilter(
        status=status,
        name=name,
        labels=_parse_labels(label),
        owner_id=current_user(request),
    )
    sandboxes = await get_orchestrator(request).list_sandboxes(sandbox_filter)
    return {"sandboxes": [_dump(s) for s in sandboxes]}


@router.post("", status_code=201)
async def create_sandbox(request: Request, config: SandboxConfig) -> dict[str, Any]:
    """Provision and start a sandbox."""
    user_id = current_user(request)
    if user_id is not None:
        config = config.model_copy(update={"owner_id": user_id})

    sandbox = await get_orchestrator(request).create_sandbox(config)
    await _after_start(request, sandbox)
    return _dump(sandbox)


@router.get("/{sandbox_id}")
async def get_sandbox(request: Request, sandbox_id: str) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    return _dump(await get_orchestrator(request).get_sandbox(sandbox_id))


@router.delete("/{sandbox_id}")
async def delete_sandbox(
    request: Request,
    sandbox_id: str,
    remove_volumes: bool = Query(False, alias="removeVolumes"),
) -> dict[str, Any]:
    """Remove a sandbox. Its chat history is kept."""
    await check_sandbox_access(request, sandbox_id)
    await get_sync_engine(request).forget_sandbox(sandbox_id)
    await get_orchestrator(request).delete_sandbox(sandbox_id, remove_volumes=remove_volumes)
    return {"deleted": True, "id": sandbox_id}


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/{sandbox_id}/start")
async def start_sandbox(request: Request, sandbox_id: str) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    sandbox = await get_orchestrator(request).start_sandbox(sandbox_id)
    await _after_start(request, sandbox)
    return _dump(sandbox)


@router.post("/{sandbox_id}/stop")
async def stop_sandbox(
    request: Request,
    sandbox_id: str,
    timeout: Optional[int] = Query(None, ge=0, le=300, description="Grace period in seconds"),
) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    sandbox = await get_orchestrator(request).stop_sandbox(sandbox_id, timeout)
    await get_sync_engine(request).forget_sandbox(sandbox_id)
    return _dump(sandbox)


@router.post("/{sandbox_id}/restart")
async def restart_sandbox(
    request: Request,
    sandbox_id: str,
    timeout: Optional[int] = Query(None, ge=0, le=300, description="Grace period in seconds"),
) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    sandbox = await get_orchestrator(request).restart_sandbox(sandbox_id, timeout)
    await get_sync_engine(request).forget_sandbox(sandbox_id)
    await _after_start(request, sandbox)
    return _dump(sandbox)


@router.post("/{sandbox_id}/pause")
async def pause_sandbox(request: Request, sandbox_id: str) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    sandbox = await get_orchestrator(request).pause_sandbox(sandbox_id)
    await get_sync_engine(request).forget_sandbox(sandbox_id)
    return _dump(sandbox)


@router.post("/{sandbox_id}/unpause")
async def unpause_sandbox(request: Request, sandbox_id: str) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    sandbox = await get_orchestrator(request).unpause_sandbox(sandbox_id)
    await _after_start(request, sandbox)
    return _dump(sandbox)


# =============================================================================
# Inspection
# =============================================================================


@router.get("/{sandbox_id}/stats")
async def get_sandbox_stats(request: Request, sandbox_id: str) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    stats = await get_orchestrator(request).get_sandbox_stats(sandbox_id)
    return stats.model_dump(by_alias=True)


@router.get("/{sandbox_id}/logs")
async def get_sandbox_logs(
    request: Request,
    sandbox_id: str,
    tail: Optional[int] = Query(100, ge=0, description="Lines from the end"),
    timestamps: bool = Query(False),
    follow: bool = Query(False, description="Stream new output as server-sent events"),
):
    """
    Container output.

    Without follow, returns {"logs": text}. With follow, streams each line as
    an SSE `data:` event until the client disconnects.
    """
    await check_sandbox_access(request, sandbox_id)
    orchestrator = get_orchestrator(request)
    options = LogOptions(tail=tail, timestamps=timestamps)

    if not follow:
        return {"logs": await orchestrator.get_logs(sandbox_id, options)}

    stream = await orchestrator.stream_logs(sandbox_id, options)

    async def log_events():
        async with stream:
            async for line in stream:
                if await request.is_disconnected():
                    logger.info(f"Log follower for {sandbox_id} disconnected")
                    return
                yield f"data: {json.dumps({'type': 'log', 'line': line})}\n\n"
            yield f"data: {json.dumps({'type': 'end'})}\n\n"

    return StreamingResponse(
        log_events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/{sandbox_id}/exec")
async def exec_in_sandbox(
    request: Request,
    sandbox_id: str,
    body: ExecRequest,
) -> dict[str, Any]:
    """Run a command. A non-zero exit code is reported, not raised."""
    await check_sandbox_access(request, sandbox_id)
    options = ExecOptions(
        working_dir=body.working_dir,
        env=body.env,
        user=body.user,
        timeout=body.timeout,
    )
    result = await get_orchestrator(request).exec(sandbox_id, body.command, options)
    return result.model_dump(by_alias=True)
