"""
Core business logic for Capsule server.
"""

from capsule.core.chat_store import ChatStore
from capsule.core.chat_sync import ChatSyncEngine
from capsule.core.orchestrator import SandboxOrchestrator

__all__ = ["SandboxOrchestrator", "ChatStore", "ChatSyncEngine"]
