"""
Shared request helpers for API routes.
"""

from typing import Optional

from fastapi import HTTPException, Request

from capsule.core.chat_store import ChatStore
from capsule.core.chat_sync import ChatSyncEngine
from capsule.core.orchestrator import SandboxOrchestrator
from capsule.lib.errors import SandboxNotFoundError
from capsule.models.sandbox import Sandbox


def get_orchestrator(request: Request) -> SandboxOrchestrator:
    """Get orchestrator from app state."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Server not ready")
    return orchestrator


def get_chat_store(request: Request) -> ChatStore:
    store = getattr(request.app.state, "chat_store", None)
    if not store:
        raise HTTPException(status_code=503, detail="Server not ready")
    return store


def get_sync_engine(request: Request) -> ChatSyncEngine:
    engine = getattr(request.app.state, "sync_engine", None)
    if not engine:
        raise HTTPException(status_code=503, detail="Server not ready")
    return engine


def current_user(request: Request) -> Optional[str]:
    """User ID set by an upstream auth middleware, if any."""
    return getattr(request.state, "user_id", None)


async def check_sandbox_access(
    request: Request, sandbox_id: str, registered: bool = False
) -> Optional[Sandbox]:
    """Enforce ownership for authenticated callers.

    A sandbox owned by another user is reported as not found. Without an
    authenticated user every sandbox is visible, including chat history of
    sandboxes whose registry row is gone (returns None then). Writes pass
    registered=True so they are refused once the row is gone.
    """
    user_id = current_user(request)
    sandbox = await get_orchestrator(request).database.get_sandbox(sandbox_id)
    if sandbox is None and registered:
        raise SandboxNotFoundError(sandbox_id)
    if user_id is None:
        return sandbox
    if sandbox is None or sandbox.owner_id != user_id:
        raise SandboxNotFoundError(sandbox_id)
    return sandbox
