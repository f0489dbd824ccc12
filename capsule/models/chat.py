"""
Chat history models.

Sessions and messages are mirrored from a sandbox's agent runtime into SQLite.
Message content is an arbitrary JSON value stored verbatim.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ChatSessionStatus(str, Enum):
    """Archived is terminal; there is no un-archive."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class ChatSessionSource(str, Enum):
    AGENT_RUNTIME = "agent-runtime"  # Mirrored from the sandbox runtime
    API = "api"  # Created directly through the REST API


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class MessageOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class ChatSession(BaseModel):
    """A chat session belonging to exactly one sandbox."""

    id: str = Field(description="Session ID")
    sandbox_id: str = Field(alias="sandboxId", serialization_alias="sandboxId")
    user_id: Optional[str] = Field(
        default=None,
        alias="userId",
        serialization_alias="userId",
    )
    source: ChatSessionSource = Field(default=ChatSessionSource.API)
    external_id: Optional[str] = Field(
        default=None,
        alias="externalId",
        serialization_alias="externalId",
        description="Session ID assigned by the agent runtime",
    )
    unique_key: Optional[str] = Field(
        default=None,
        alias="uniqueKey",
        serialization_alias="uniqueKey",
        description="At most one session per sandbox may carry a given key",
    )
    title: Optional[str] = Field(default=None)
    status: ChatSessionStatus = Field(default=ChatSessionStatus.ACTIVE)
    message_count: int = Field(
        default=0,
        alias="messageCount",
        serialization_alias="messageCount",
    )
    last_message_at: Optional[datetime] = Field(
        default=None,
        alias="lastMessageAt",
        serialization_alias="lastMessageAt",
    )
    last_synced_at: Optional[datetime] = Field(
        default=None,
        alias="lastSyncedAt",
        serialization_alias="lastSyncedAt",
    )
    created_at: datetime = Field(alias="createdAt", serialization_alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt", serialization_alias="updatedAt")

    model_config = {"from_attributes": True, "populate_by_name": True}


class ChatMessage(BaseModel):
    """A single message within a session."""

    id: str = Field(description="Message ID")
    session_id: str = Field(alias="sessionId", serialization_alias="sessionId")
    external_id: Optional[str] = Field(
        default=None,
        alias="externalId",
        serialization_alias="externalId",
        description="Message ID assigned by the agent runtime",
    )
    role: MessageRole
    content: Any = Field(default=None, description="Arbitrary JSON, stored verbatim")
    created_at: datetime = Field(alias="createdAt", serialization_alias="createdAt")

    model_config = {"from_attributes": True, "populate_by_name": True}


class ChatSessionCreate(BaseModel):
    """Request body for creating a session directly."""

    title: Optional[str] = Field(default=None, max_length=500)
    unique_key: Optional[str] = Field(
        default=None,
        alias="uniqueKey",
        max_length=128,
        description="Workflow key such as 'onboarding'",
    )
    runtime: bool = Field(
        default=False,
        description="Create the session in the sandbox's agent runtime and mirror it",
    )

    model_config = {"populate_by_name": True}


class ChatMessageCreate(BaseModel):
    """Request body for appending a message to a session."""

    role: MessageRole = MessageRole.USER
    content: Any = Field(description="Message content (text or structured parts)")
    forward: bool = Field(
        default=False,
        description="Forward the text to the sandbox's agent runtime instead of storing directly",
    )


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int


class SessionCounts(BaseModel):
    """Counts returned alongside a session listing."""

    total: int = 0
    active: int = 0


class SessionStats(SessionCounts):
    """Full per-sandbox chat statistics."""

    archived: int = 0
    total_messages: int = Field(default=0, serialization_alias="totalMessages")


class SessionPage(BaseModel):
    sessions: list[ChatSession]
    pagination: Pagination
    stats: SessionCounts


class MessagePage(BaseModel):
    messages: list[ChatMessage]
    pagination: Pagination


class CreateSessionResult(BaseModel):
    session: ChatSession
    created: bool = Field(description="False when an existing session with the same unique key was returned")


class LiveSyncState(BaseModel):
    active: bool = False
    last_sync_time: Optional[datetime] = Field(default=None, serialization_alias="lastSyncTime")
    reconnect_attempts: int = Field(default=0, serialization_alias="reconnectAttempts")


class SyncStatus(BaseModel):
    sync: LiveSyncState
    stats: SessionStats
    sandbox_status: str = Field(serialization_alias="sandboxStatus")


class SyncResult(BaseModel):
    """Outcome of a sync pass."""

    sessions_synced: int = Field(default=0, serialization_alias="sessionsSynced")
    sessions_created: int = Field(default=0, serialization_alias="sessionsCreated")
    messages_synced: int = Field(default=0, serialization_alias="messagesSynced")
    messages_created: int = Field(default=0, serialization_alias="messagesCreated")
    errors: list[str] = Field(default_factory=list)

    def merge(self, other: "SyncResult") -> None:
        self.sessions_synced += other.sessions_synced
        self.sessions_created += other.sessions_created
        self.messages_synced += other.messages_synced
        self.messages_created += other.messages_created
        self.errors.extend(other.errors)
