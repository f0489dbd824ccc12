"""
Pydantic models for Capsule server.
"""

from capsule.models.chat import (
    ChatMessage,
    ChatSession,
    ChatSessionSource,
    ChatSessionStatus,
    MessageRole,
    SessionStats,
)
from capsule.models.runtime import RuntimeEvent, RuntimeMessage, RuntimeSession
from capsule.models.sandbox import (
    ContainerInfo,
    Sandbox,
    SandboxConfig,
    SandboxFilter,
    SandboxStatus,
)

__all__ = [
    # Sandbox
    "Sandbox",
    "SandboxConfig",
    "SandboxFilter",
    "SandboxStatus",
    "ContainerInfo",
    # Chat
    "ChatSession",
    "ChatMessage",
    "ChatSessionSource",
    "ChatSessionStatus",
    "MessageRole",
    "SessionStats",
    # Runtime
    "RuntimeSession",
    "RuntimeMessage",
    "RuntimeEvent",
]
