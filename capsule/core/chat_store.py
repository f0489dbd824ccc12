"""
Sandbox-scoped chat queries.

Every lookup is qualified by sandbox ID: a session owned by another sandbox
is reported exactly like a missing one.
"""

import logging
from typing import Any, Optional

from capsule.db.database import Database
from capsule.lib.errors import InvalidStateError, SessionNotFoundError, ValidationError
from capsule.models.chat import (
    ChatMessage,
    ChatSession,
    ChatSessionStatus,
    CreateSessionResult,
    MessageOrder,
    MessagePage,
    MessageRole,
    Pagination,
    SessionCounts,
    SessionPage,
    SessionStats,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _check_page(limit: int, offset: int) -> None:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise ValidationError("offset must be >= 0")


class ChatStore:
    """Read and write chat sessions and messages for one sandbox at a time."""

    def __init__(self, database: Database):
        self.database = database

    async def list_sessions(
        self,
        sandbox_id: str,
        status: Optional[ChatSessionStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> SessionPage:
        """One page of sessions.

        pagination.total counts the status-filtered set; stats always cover
        every session of the sandbox.
        """
        _check_page(limit, offset)
        sessions = await self.database.list_chat_sessions(sandbox_id, status, limit, offset)
        total = await self.database.count_chat_sessions(sandbox_id, status)
        stats = await self.database.get_chat_stats(sandbox_id)
        return SessionPage(
            sessions=sessions,
            pagination=Pagination(total=total, limit=limit, offset=offset),
            stats=SessionCounts(total=stats.total, active=stats.active),
        )

    async def get_session(self, sandbox_id: str, session_id: str) -> ChatSession:
        session = await self.database.get_sandbox_chat_session(sandbox_id, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def list_messages(
        self,
        sandbox_id: str,
        session_id: str,
        limit: int = 50,
        offset: int = 0,
        order: MessageOrder = MessageOrder.ASC,
    ) -> MessagePage:
        _check_page(limit, offset)
        await self.get_session(sandbox_id, session_id)
        messages = await self.database.list_chat_messages(session_id, limit, offset, order)
        total = await self.database.count_chat_messages(session_id)
        return MessagePage(
            messages=messages,
            pagination=Pagination(total=total, limit=limit, offset=offset),
        )

    async def archive_session(self, sandbox_id: str, session_id: str) -> ChatSession:
        """Archive a session. Archiving an archived session is a no-op."""
        session = await self.get_session(sandbox_id, session_id)
        if session.status == ChatSessionStatus.ARCHIVED:
            return session
        archived = await self.database.archive_chat_session(session_id)
        logger.info(f"Archived session {session_id} in sandbox {sandbox_id}")
        return archived  # type: ignore

    async def create_session(
        self,
        sandbox_id: str,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        unique_key: Optional[str] = None,
    ) -> CreateSessionResult:
        """Create a session; with unique_key, concurrent callers all get the same one."""
        session, created = await self.database.create_chat_session(
            sandbox_id, user_id=user_id, title=title, unique_key=unique_key
        )
        if created:
            logger.info(f"Created session {session.id} in sandbox {sandbox_id}")
        return CreateSessionResult(session=session, created=created)

    async def add_message(
        self,
        sandbox_id: str,
        session_id: str,
        role: MessageRole,
        content: Any,
    ) -> ChatMessage:
        session = await self.get_session(sandbox_id, session_id)
        if session.status == ChatSessionStatus.ARCHIVED:
            raise InvalidStateError(f"Session {session_id} is archived")
        return await self.database.add_chat_message(session_id, role, content)

    async def get_stats(self, sandbox_id: str) -> SessionStats:
        return await self.database.get_chat_stats(sandbox_id)
