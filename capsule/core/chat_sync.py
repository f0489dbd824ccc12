"""
Chat sync engine.

Mirrors sessions and messages from a sandbox's agent runtime into the chat
store. The runtime is the source of truth for content; the store is a durable
copy that survives the container.

Mirroring is append-only: a session or message that disappears from the
runtime is never deleted locally (a runtime session deletion archives the
local session). Content of an already-mirrored message is replaced with the
runtime's latest version.

Two paths feed the store:
- on demand: sync_all / sync_session / send_message
- live: start_live_sync subscribes to the runtime event feed and applies each
  event incrementally, reconnecting with exponential backoff.
"""

import asyncio
import contextlib
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import TypeAdapter, ValidationError

from capsule.config import Settings
from capsule.core.orchestrator import SandboxOrchestrator
from capsule.core.runtime_client import AgentRuntimeClient, RuntimeClientFactory
from capsule.db.database import Database
from capsule.lib.errors import (
    BackendUnavailableError,
    InvalidStateError,
    NotFoundError,
    SandboxNotFoundError,
    SandboxNotRunningError,
    SessionNotFoundError,
)
from capsule.models.chat import (
    ChatSession,
    ChatSessionSource,
    LiveSyncState,
    MessageRole,
    SyncResult,
    SyncStatus,
)
from capsule.models.runtime import (
    MessageEventInfo,
    PartEventInfo,
    RuntimeEvent,
    RuntimeMessage,
    RuntimeSession,
    SendMessageInput,
)
from capsule.models.sandbox import Sandbox, SandboxStatus

logger = logging.getLogger(__name__)


def _role(value: Any) -> MessageRole:
    try:
        return MessageRole(value)
    except ValueError:
        return MessageRole.ASSISTANT


_event_payload = TypeAdapter(dict[str, Any])


def _payload(properties: dict[str, Any], key: str) -> dict[str, Any]:
    """The object under `key` of an event; ValidationError when it is not one."""
    return _event_payload.validate_python(properties.get(key) or {})


@dataclass
class LiveSyncConnection:
    """State of one sandbox's event subscription."""

    sandbox_id: str
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    reconnect_attempts: int = 0
    last_sync_time: Optional[datetime] = None


class ChatSyncEngine:
    """Keeps the chat store in step with each sandbox's agent runtime."""

    def __init__(
        self,
        orchestrator: SandboxOrchestrator,
        database: Database,
        clients: RuntimeClientFactory,
        settings: Settings,
    ):
        self.orchestrator = orchestrator
        self.database = database
        self.clients = clients
        self.settings = settings
        self._connections: dict[str, LiveSyncConnection] = {}
        # Serialises work on one runtime session across full sync and live events
        self._session_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # Status
    # =========================================================================

    async def get_sync_status(self, sandbox_id: str) -> SyncStatus:
        """Store counts and live sync state from the registry alone."""
        sandbox = await self.database.get_sandbox(sandbox_id)
        if sandbox is None:
            raise SandboxNotFoundError(sandbox_id)
        stats = await self.database.get_chat_stats(sandbox_id)
        connection = self._connections.get(sandbox_id)
        live = LiveSyncState()
        if connection is not None:
            live = LiveSyncState(
                active=True,
                last_sync_time=connection.last_sync_time,
                reconnect_attempts=connection.reconnect_attempts,
            )
        return SyncStatus(sync=live, stats=stats, sandbox_status=sandbox.status.value)

    # =========================================================================
    # On-demand sync
    # =========================================================================

    async def sync_all(self, sandbox_id: str) -> SyncResult:
        """Mirror every runtime session of a running sandbox.

        Sessions sync in parallel up to sync_concurrency; messages within a
        session sync in runtime order. A failure in one session is recorded
        in the result and does not stop the others.
        """
        sandbox, client = await self._connect(sandbox_id)
        runtime_sessions = await client.list_sessions()
        semaphore = asyncio.Semaphore(max(1, self.settings.sync_concurrency))

        async def _one(runtime_session: RuntimeSession) -> SyncResult:
            async with semaphore:
                return await self._sync_runtime_session(sandbox, client, runtime_session)

        outcomes = await asyncio.gather(
            *(_one(rs) for rs in runtime_sessions), return_exceptions=True
        )

        result = SyncResult()
        for runtime_session, outcome in zip(runtime_sessions, outcomes):
            if isinstance(outcome, SyncResult):
                result.merge(outcome)
            elif isinstance(outcome, Exception):
                logger.error(f"Failed to sync session {runtime_session.id} of {sandbox_id}: {outcome}")
                result.errors.append(f"{runtime_session.id}: {outcome}")
            else:
                raise outcome

        connection = self._connections.get(sandbox_id)
        if connection is not None:
            connection.last_sync_time = datetime.now(timezone.utc)

        logger.info(
            f"Synced {result.sessions_synced} session(s), {result.messages_created} new "
            f"message(s) for sandbox {sandbox_id}"
        )
        return result

    async def sync_session(self, sandbox_id: str, session_id: str) -> ChatSession:
        """Mirror one session, addressed by local ID or runtime ID."""
        sandbox, client = await self._connect(sandbox_id)

        local = await self.database.get_sandbox_chat_session(sandbox_id, session_id)
        if local is not None and local.external_id is None:
            raise SessionNotFoundError(session_id)
        external_id = local.external_id if local is not None else session_id

        runtime_session = await client.get_session(external_id)
        await self._sync_runtime_session(sandbox, client, runtime_session)
        session = await self.database.get_chat_session_by_external_id(sandbox_id, runtime_session.id)
        return session  # type: ignore

    async def create_runtime_session(
        self, sandbox_id: str, title: Optional[str] = None
    ) -> ChatSession:
        """Create a session in the runtime and mirror it."""
        sandbox, client = await self._connect(sandbox_id)
        runtime_session = await client.create_session(title)
        await self._sync_runtime_session(sandbox, client, runtime_session)
        session = await self.database.get_chat_session_by_external_id(sandbox_id, runtime_session.id)
        return session  # type: ignore

    async def send_message(self, sandbox_id: str, session_id: str, text: str) -> ChatSession:
        """Prompt the runtime, then mirror the session so the exchange is persisted."""
        sandbox, client = await self._connect(sandbox_id)
        local = await self.database.get_sandbox_chat_session(sandbox_id, session_id)
        if local is None:
            raise SessionNotFoundError(session_id)
        if local.external_id is None:
            raise InvalidStateError(f"Session {session_id} has no agent runtime counterpart")

        await client.send_message(local.external_id, SendMessageInput.text(text))
        runtime_session = await client.get_session(local.external_id)
        await self._sync_runtime_session(sandbox, client, runtime_session)
        return await self.database.get_chat_session(local.id)  # type: ignore

    async def _connect(self, sandbox_id: str) -> tuple[Sandbox, AgentRuntimeClient]:
        sandbox = await self.orchestrator.get_sandbox(sandbox_id)
        if sandbox.status != SandboxStatus.RUNNING:
            raise SandboxNotRunningError(sandbox_id, sandbox.status.value)
        return sandbox, await self.clients.get_client(sandbox_id)

    async def _sync_runtime_session(
        self,
        sandbox: Sandbox,
        client: AgentRuntimeClient,
        runtime_session: RuntimeSession,
    ) -> SyncResult:
        result = SyncResult(sessions_synced=1)

        async with self._session_locks[f"{sandbox.id}/{runtime_session.id}"]:
            session, created = await self._upsert_session(sandbox, runtime_session)
            if created:
                result.sessions_created = 1

            messages = await client.list_messages(runtime_session.id)
            for message in messages:
                _, message_created = await self.database.upsert_chat_message(
                    session.id,
                    message.id,
                    _role(message.role),
                    message.content(),
                    message.created_at,
                )
                result.messages_synced += 1
                if message_created:
                    result.messages_created += 1

            await self.database.refresh_session_counters(session.id, synced=True)

        return result

    async def _upsert_session(
        self, sandbox: Sandbox, runtime_session: RuntimeSession
    ) -> tuple[ChatSession, bool]:
        """Get or create the local mirror of a runtime session; track its title."""
        session, created = await self.database.create_chat_session(
            sandbox.id,
            user_id=sandbox.owner_id,
            title=runtime_session.title,
            source=ChatSessionSource.AGENT_RUNTIME,
            external_id=runtime_session.id,
            created_at=runtime_session.created_at,
        )
        if not created and runtime_session.title and runtime_session.title != session.title:
            session = await self.database.update_chat_session_title(session.id, runtime_session.title)  # type: ignore
        return session, created

    # =========================================================================
    # Live sync
    # =========================================================================

    async def start_live_sync(self, sandbox_id: str) -> bool:
        """Subscribe to a running sandbox's event feed. Returns False if not running."""
        if sandbox_id in self._connections:
            return True

        sandbox = await self.orchestrator.get_sandbox(sandbox_id)
        if sandbox.status != SandboxStatus.RUNNING:
            logger.warning(
                f"Not starting live sync for {sandbox_id}: sandbox is {sandbox.status.value}",
                extra={"sandbox_id": sandbox_id},
            )
            return False

        connection = LiveSyncConnection(sandbox_id=sandbox_id)
        self._connections[sandbox_id] = connection
        connection.task = asyncio.create_task(
            self._run_live_sync(connection), name=f"live-sync-{sandbox_id}"
        )
        logger.info(
            f"Started live sync for sandbox {sandbox_id}",
            extra={"sandbox_id": sandbox_id},
        )
        return True

    async def stop_live_sync(self, sandbox_id: str) -> None:
        connection = self._connections.pop(sandbox_id, None)
        if connection is None:
            return
        connection.stop.set()
        if connection.task is not None and not connection.task.done():
            connection.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await connection.task
        logger.info(
            f"Stopped live sync for sandbox {sandbox_id}",
            extra={"sandbox_id": sandbox_id},
        )

    async def stop_all(self) -> None:
        logger.info(f"Stopping {len(self._connections)} live sync connection(s)")
        for sandbox_id in list(self._connections):
            await self.stop_live_sync(sandbox_id)

    async def forget_sandbox(self, sandbox_id: str) -> None:
        """Drop live sync and the cached runtime client after a sandbox stops."""
        await self.stop_live_sync(sandbox_id)
        await self.clients.discard(sandbox_id)

    def is_live(self, sandbox_id: str) -> bool:
        return sandbox_id in self._connections

    async def _run_live_sync(self, connection: LiveSyncConnection) -> None:
        base_delay = self.settings.sync_reconnect_base_delay
        max_attempts = self.settings.sync_reconnect_max_attempts
        try:
            while not connection.stop.is_set():
                try:
                    await self._consume_events(connection)
                except NotFoundError as e:
                    logger.warning(
                        f"Live sync for {connection.sandbox_id} ended: {e}",
                        extra={"sandbox_id": connection.sandbox_id},
                    )
                    return
                except (BackendUnavailableError, InvalidStateError) as e:
                    logger.warning(
                        f"Live sync for {connection.sandbox_id} interrupted: {e}",
                        extra={"sandbox_id": connection.sandbox_id},
                    )
                except Exception as e:
                    logger.error(
                        f"Live sync for {connection.sandbox_id} interrupted by unexpected error: {e}",
                        exc_info=True,
                        extra={"sandbox_id": connection.sandbox_id},
                    )

                if connection.stop.is_set():
                    return

                connection.reconnect_attempts += 1
                if connection.reconnect_attempts > max_attempts:
                    logger.error(
                        f"Live sync for {connection.sandbox_id} gave up after "
                        f"{max_attempts} reconnect attempts",
                        extra={"sandbox_id": connection.sandbox_id},
                    )
                    return

                delay = base_delay * 2 ** (connection.reconnect_attempts - 1)
                logger.info(
                    f"Reconnecting live sync for {connection.sandbox_id} "
                    f"(attempt {connection.reconnect_attempts}) in {delay:.1f}s",
                    extra={"sandbox_id": connection.sandbox_id},
                )
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(connection.stop.wait(), timeout=delay)
        finally:
            if self._connections.get(connection.sandbox_id) is connection:
                del self._connections[connection.sandbox_id]

    async def _consume_events(self, connection: LiveSyncConnection) -> None:
        """Catch up with a full sync, then apply events until the feed ends."""
        await self.sync_all(connection.sandbox_id)
        connection.last_sync_time = datetime.now(timezone.utc)

        client = await self.clients.get_client(connection.sandbox_id)
        async with client.subscribe_events(connection.stop) as events:
            async for event in events:
                connection.reconnect_attempts = 0
                await self.apply_event(connection.sandbox_id, event)
                connection.last_sync_time = datetime.now(timezone.utc)

    # =========================================================================
    # Event handling
    # =========================================================================

    async def apply_event(self, sandbox_id: str, event: RuntimeEvent) -> None:
        """Apply one runtime event to the store. Malformed events are skipped."""
        sandbox = await self.database.get_sandbox(sandbox_id)
        if sandbox is None:
            logger.warning(f"Dropping {event.type} event: sandbox {sandbox_id} not registered")
            return

        try:
            await self._dispatch_event(sandbox, event)
        except ValidationError as e:
            logger.warning(
                f"Skipping malformed {event.type} event from {sandbox_id}: "
                f"{e.error_count()} validation error(s)",
                extra={"sandbox_id": sandbox_id},
            )

    async def _dispatch_event(self, sandbox: Sandbox, event: RuntimeEvent) -> None:
        props = event.properties
        if event.type in ("session.created", "session.updated"):
            info = _payload(props, "info")
            if not info.get("id"):
                return
            runtime_session = RuntimeSession.model_validate(info)
            async with self._session_locks[f"{sandbox.id}/{runtime_session.id}"]:
                session, _ = await self._upsert_session(sandbox, runtime_session)
                await self.database.refresh_session_counters(session.id, synced=True)

        elif event.type == "session.deleted":
            info = _payload(props, "info")
            external_id = info.get("id") or props.get("sessionID")
            if not isinstance(external_id, str) or not external_id:
                logger.warning(f"No session ID in delete event from {sandbox.id}")
                return
            session = await self.database.get_chat_session_by_external_id(sandbox.id, external_id)
            if session is not None:
                await self.database.archive_chat_session(session.id)
                logger.info(f"Archived session {session.id}: deleted in runtime of {sandbox.id}")

        elif event.type in ("message.created", "message.updated"):
            info = _payload(props, "info")
            if not info.get("id") or not info.get("sessionID"):
                return
            MessageEventInfo.model_validate(info)
            await self._apply_message_info(sandbox, info)

        elif event.type == "message.part.updated":
            part = _payload(props, "part")
            if not part.get("messageID") or not part.get("sessionID"):
                return
            PartEventInfo.model_validate(part)
            await self._apply_part(sandbox, part)

        else:
            logger.debug(f"Ignoring runtime event {event.type} from {sandbox.id}")

    async def _apply_message_info(self, sandbox: Sandbox, info: dict[str, Any]) -> None:
        external_session_id = info["sessionID"]
        async with self._session_locks[f"{sandbox.id}/{external_session_id}"]:
            session, _ = await self._upsert_session(
                sandbox, RuntimeSession(id=external_session_id)
            )
            existing = await self.database.get_chat_message_by_external_id(session.id, info["id"])
            parts: list[Any] = []
            if existing is not None and isinstance(existing.content, dict):
                parts = existing.content.get("parts") or []

            message = RuntimeMessage(info=info, parts=parts)
            await self.database.upsert_chat_message(
                session.id, message.id, _role(message.role), message.content(), message.created_at
            )
            await self.database.refresh_session_counters(session.id, synced=True)

    async def _apply_part(self, sandbox: Sandbox, part: dict[str, Any]) -> None:
        external_session_id = part["sessionID"]
        async with self._session_locks[f"{sandbox.id}/{external_session_id}"]:
            session = await self.database.get_chat_session_by_external_id(
                sandbox.id, external_session_id
            )
            if session is None:
                return
            message = await self.database.get_chat_message_by_external_id(
                session.id, part["messageID"]
            )
            if message is None:
                # The next message.updated event or full sync creates it
                return

            content = dict(message.content) if isinstance(message.content, dict) else {}
            parts = list(content.get("parts") or [])
            for index, existing in enumerate(parts):
                if isinstance(existing, dict) and part.get("id") and existing.get("id") == part["id"]:
                    parts[index] = part
                    break
            else:
                parts.append(part)
            content["parts"] = parts

            await self.database.upsert_chat_message(
                session.id, part["messageID"], message.role, content
            )
