"""
Chat history API endpoints.

Sessions and messages are served from the local store, so history stays
readable while a sandbox is stopped or after it has been deleted. Creating
sessions or messages needs a registered sandbox. Sync endpoints pull from
the sandbox's agent runtime and require it to be running.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Query, Request, Response

from capsule.api.deps import (
    check_sandbox_access,
    current_user,
    get_chat_store,
    get_sync_engine,
)
from capsule.lib.errors import ValidationError
from capsule.models.chat import (
    ChatMessageCreate,
    ChatSessionCreate,
    ChatSessionStatus,
    MessageOrder,
)

router = APIRouter(prefix="/sandboxes/{sandbox_id}/chat", tags=["chat"])
logger = logging.getLogger(__name__)

# Messages included when fetching a single session
RECENT_MESSAGES = 50


@router.get("/sessions")
async def list_sessions(
    request: Request,
    sandbox_id: str,
    status: Optional[ChatSessionStatus] = Query(None, description="Filter by status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    """
    List a sandbox's chat sessions, most recently active first.

    Query params:
    - status: active or archived
    - limit: Page size (1-100)
    - offset: Sessions to skip
    """
    await check_sandbox_access(request, sandbox_id)
    page = await get_chat_store(request).list_sessions(sandbox_id, status, limit, offset)
    return page.model_dump(by_alias=True, mode="json")


@router.post("/sessions")
async def create_session(
    request: Request,
    response: Response,
    sandbox_id: str,
    body: ChatSessionCreate,
) -> dict[str, Any]:
    """
    Create a session.

    With uniqueKey, an existing session carrying the same key is returned
    instead (200, created=false). With runtime=true the session is created in
    the agent runtime and mirrored.
    """
    sandbox = await check_sandbox_access(request, sandbox_id, registered=True)

    if body.runtime:
        if body.unique_key:
            raise ValidationError("uniqueKey cannot be combined with runtime sessions")
        session = await get_sync_engine(request).create_runtime_session(sandbox_id, body.title)
        response.status_code = 201
        return {"session": session.model_dump(by_alias=True, mode="json"), "created": True}

    user_id = current_user(request) or sandbox.owner_id
    result = await get_chat_store(request).create_session(
        sandbox_id, user_id=user_id, title=body.title, unique_key=body.unique_key
    )
    response.status_code = 201 if result.created else 200
    return result.model_dump(by_alias=True, mode="json")


@router.get("/sessions/{session_id}")
async def get_session(request: Request, sandbox_id: str, session_id: str) -> dict[str, Any]:
    """Get a session with its most recent messages in chronological order."""
    await check_sandbox_access(request, sandbox_id)
    store = get_chat_store(request)
    session = await store.get_session(sandbox_id, session_id)
    page = await store.list_messages(
        sandbox_id, session_id, limit=RECENT_MESSAGES, order=MessageOrder.DESC
    )
    return {
        "session": session.model_dump(by_alias=True, mode="json"),
        "messages": [m.model_dump(by_alias=True, mode="json") for m in reversed(page.messages)],
        "messageCount": page.pagination.total,
    }


@router.delete("/sessions/{session_id}")
async def archive_session(request: Request, sandbox_id: str, session_id: str) -> dict[str, Any]:
    """Archive a session. Messages are kept; archiving twice is harmless."""
    await check_sandbox_access(request, sandbox_id)
    session = await get_chat_store(request).archive_session(sandbox_id, session_id)
    return {"session": session.model_dump(by_alias=True, mode="json"), "archived": True}


@router.get("/sessions/{session_id}/messages")
async def list_messages(
    request: Request,
    sandbox_id: str,
    session_id: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    order: MessageOrder = Query(MessageOrder.ASC),
) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    page = await get_chat_store(request).list_messages(
        sandbox_id, session_id, limit=limit, offset=offset, order=order
    )
    return page.model_dump(by_alias=True, mode="json")


@router.post("/sessions/{session_id}/messages")
async def add_message(
    request: Request,
    response: Response,
    sandbox_id: str,
    session_id: str,
    body: ChatMessageCreate,
) -> dict[str, Any]:
    """
    Append a message.

    With forward=true the text is sent to the agent runtime as a prompt and
    the session is re-synced so the prompt and reply are both stored.
    """
    await check_sandbox_access(request, sandbox_id, registered=True)

    if body.forward:
        if not isinstance(body.content, str) or not body.content.strip():
            raise ValidationError("Forwarded messages need non-empty text content")
        session = await get_sync_engine(request).send_message(sandbox_id, session_id, body.content)
        return {"session": session.model_dump(by_alias=True, mode="json")}

    message = await get_chat_store(request).add_message(
        sandbox_id, session_id, body.role, body.content
    )
    response.status_code = 201
    return {"message": message.model_dump(by_alias=True, mode="json")}


# =============================================================================
# Sync
# =============================================================================


@router.get("/sync/status")
async def get_sync_status(request: Request, sandbox_id: str) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    status = await get_sync_engine(request).get_sync_status(sandbox_id)
    return status.model_dump(by_alias=True, mode="json")


@router.post("/sync")
async def sync_all(request: Request, sandbox_id: str) -> dict[str, Any]:
    """Mirror every runtime session of a running sandbox."""
    await check_sandbox_access(request, sandbox_id, registered=True)
    result = await get_sync_engine(request).sync_all(sandbox_id)
    return result.model_dump(by_alias=True, mode="json")


@router.post("/sessions/{session_id}/sync")
async def sync_session(request: Request, sandbox_id: str, session_id: str) -> dict[str, Any]:
    """Mirror one session; session_id may be the local or runtime ID."""
    await check_sandbox_access(request, sandbox_id, registered=True)
    session = await get_sync_engine(request).sync_session(sandbox_id, session_id)
    return {"session": session.model_dump(by_alias=True, mode="json")}


@router.post("/sync/live")
async def start_live_sync(request: Request, sandbox_id: str) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id, registered=True)
    active = await get_sync_engine(request).start_live_sync(sandbox_id)
    return {"active": active}


@router.delete("/sync/live")
async def stop_live_sync(request: Request, sandbox_id: str) -> dict[str, Any]:
    await check_sandbox_access(request, sandbox_id)
    await get_sync_engine(request).stop_live_sync(sandbox_id)
    return {"active": False}
