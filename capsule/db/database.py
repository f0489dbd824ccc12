"""
SQLite store for the sandbox registry and mirrored chat history.

Provides async database operations using aiosqlite.

Timestamps are stored as UTC ISO-8601 strings with microsecond precision so
that lexical order equals chronological order.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from capsule.lib.errors import ConflictError
from capsule.models.chat import (
    ChatMessage,
    ChatSession,
    ChatSessionSource,
    ChatSessionStatus,
    MessageOrder,
    MessageRole,
    SessionStats,
)
from capsule.models.sandbox import Sandbox, SandboxStatus

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Sandbox registry
CREATE TABLE IF NOT EXISTS sandboxes (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'created',
    container_id TEXT,
    image TEXT NOT NULL,
    urls TEXT,
    labels TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sandboxes_owner ON sandboxes(owner_id);
CREATE INDEX IF NOT EXISTS idx_sandboxes_status ON sandboxes(status);

-- Chat sessions (no FK to sandboxes: history outlives the sandbox)
CREATE TABLE IF NOT EXISTS chat_sessions (
    id TEXT PRIMARY KEY,
    sandbox_id TEXT NOT NULL,
    user_id TEXT,
    source TEXT NOT NULL DEFAULT 'api',
    external_id TEXT,
    unique_key TEXT,
    title TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    message_count INTEGER NOT NULL DEFAULT 0,
    last_message_at TEXT,
    last_synced_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(sandbox_id, external_id),
    UNIQUE(sandbox_id, unique_key)
);

CREATE INDEX IF NOT EXISTS idx_chat_sessions_sandbox ON chat_sessions(sandbox_id, status);
CREATE INDEX IF NOT EXISTS idx_chat_sessions_last_message ON chat_sessions(last_message_at DESC);

-- Chat messages; seq breaks created_at ties in insertion order
CREATE TABLE IF NOT EXISTS chat_messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL REFERENCES chat_sessions(id),
    external_id TEXT,
    role TEXT NOT NULL,
    content TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(session_id, external_id)
);

CREATE INDEX IF NOT EXISTS idx_chat_messages_order ON chat_messages(session_id, created_at, seq);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

INSERT OR IGNORE INTO schema_version (version, applied_at)
VALUES (1, datetime('now'));
"""

_SESSION_ORDER = (
    "ORDER BY last_message_at IS NULL, last_message_at DESC, created_at DESC, id DESC"
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Normalize a datetime to the stored string form."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Async SQLite database for sandboxes and chat history."""

    def __init__(self, db_path: Path):
        """Initialize database with path."""
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Connect to database and initialize schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.executescript(SCHEMA_SQL)
        await self._connection.commit()

        logger.info(f"Database connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @property
    def connection(self) -> aiosqlite.Connection:
        """Get active connection, raising if not connected."""
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    async def reset(self) -> None:
        """Delete all rows. Used by tests to isolate cases."""
        await self.connection.executescript(
            """
            DELETE FROM chat_messages;
            DELETE FROM chat_sessions;
            DELETE FROM sandboxes;
            """
        )
        await self.connection.commit()

    # =========================================================================
    # Sandbox registry
    # =========================================================================

    async def create_sandbox(self, sandbox: Sandbox) -> Sandbox:
        """Insert a registry row. Raises ConflictError if the ID is taken."""
        try:
            await self.connection.execute(
                """
                INSERT INTO sandboxes (
                    id, owner_id, name, status, container_id, image,
                    urls, labels, created_at, started_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sandbox.id,
                    sandbox.owner_id,
                    sandbox.name,
                    sandbox.status.value,
                    sandbox.container_id,
                    sandbox.image,
                    json.dumps(sandbox.urls),
                    json.dumps(sandbox.labels),
                    _ts(sandbox.created_at),
                    _ts(sandbox.started_at),
                    _ts(sandbox.updated_at),
                ),
            )
            await self.connection.commit()
        except aiosqlite.IntegrityError as e:
            await self.connection.rollback()
            raise ConflictError(f"Sandbox already exists: {sandbox.id}") from e

        return await self.get_sandbox(sandbox.id)  # type: ignore

    async def get_sandbox(self, sandbox_id: str) -> Optional[Sandbox]:
        """Get a sandbox by ID."""
        async with self.connection.execute(
            "SELECT * FROM sandboxes WHERE id = ?", (sandbox_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_sandbox(row)
            return None

    async def list_sandboxes(
        self,
        statuses: Optional[set[SandboxStatus]] = None,
        owner_id: Optional[str] = None,
    ) -> list[Sandbox]:
        """List sandboxes, newest first, with optional status/owner filtering."""
        query = "SELECT * FROM sandboxes WHERE 1=1"
        params: list[Any] = []

        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)

        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)

        query += " ORDER BY created_at DESC, id"

        async with self.connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_sandbox(row) for row in rows]

    async def update_sandbox_state(
        self,
        sandbox_id: str,
        status: SandboxStatus,
        container_id: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> Optional[Sandbox]:
        """Record an observed or confirmed status.

        container_id is only written when the row has none; a different
        non-null value is refused with ConflictError.
        """
        current = await self.get_sandbox(sandbox_id)
        if current is None:
            return None

        if (
            container_id is not None
            and current.container_id is not None
            and current.container_id != container_id
        ):
            raise ConflictError(
                f"Sandbox {sandbox_id} is bound to container {current.container_id[:12]}"
            )

        updates = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status.value, _ts(_now())]

        if container_id is not None and current.container_id is None:
            updates.append("container_id = ?")
            params.append(container_id)

        if started_at is not None:
            updates.append("started_at = ?")
            params.append(_ts(started_at))

        params.append(sandbox_id)
        await self.connection.execute(
            f"UPDATE sandboxes SET {', '.join(updates)} WHERE id = ?",
            params,
        )
        await self.connection.commit()

        return await self.get_sandbox(sandbox_id)

    async def delete_sandbox(self, sandbox_id: str) -> bool:
        """Delete a registry row. Chat history is left untouched."""
        cursor = await self.connection.execute(
            "DELETE FROM sandboxes WHERE id = ?", (sandbox_id,)
        )
        await self.connection.commit()
        return cursor.rowcount > 0

    # =========================================================================
    # Chat sessions
    # =========================================================================

    async def create_chat_session(
        self,
        sandbox_id: str,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        unique_key: Optional[str] = None,
        source: ChatSessionSource = ChatSessionSource.API,
        external_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> tuple[ChatSession, bool]:
        """Create a session, returning (session, created).

        When unique_key or external_id is given, the UNIQUE constraints decide
        a single winner among concurrent callers; losers get the existing row
        with created=False.
        """
        session_id = str(uuid.uuid4())
        now = _ts(_now())
        created = _ts(created_at) or now

        cursor = await self.connection.execute(
            """
            INSERT INTO chat_sessions (
                id, sandbox_id, user_id, source, external_id, unique_key,
                title, status, message_count, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 'active', 0, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (
                session_id,
                sandbox_id,
                user_id,
                source.value,
                external_id,
                unique_key,
                title,
                created,
                now,
            ),
        )
        await self.connection.commit()

        if cursor.rowcount > 0:
            return await self.get_chat_session(session_id), True  # type: ignore

        existing: Optional[ChatSession] = None
        if unique_key is not None:
            existing = await self._get_chat_session_where(
                "sandbox_id = ? AND unique_key = ?", (sandbox_id, unique_key)
            )
        if existing is None and external_id is not None:
            existing = await self.get_chat_session_by_external_id(sandbox_id, external_id)
        if existing is None:
            raise ConflictError("Chat session creation conflicted, retry the request")
        return existing, False

    async def get_chat_session(self, session_id: str) -> Optional[ChatSession]:
        """Get a session by ID regardless of sandbox."""
        return await self._get_chat_session_where("id = ?", (session_id,))

    async def get_sandbox_chat_session(
        self, sandbox_id: str, session_id: str
    ) -> Optional[ChatSession]:
        """Get a session only if it belongs to the given sandbox."""
        return await self._get_chat_session_where(
            "id = ? AND sandbox_id = ?", (session_id, sandbox_id)
        )

    async def get_chat_session_by_external_id(
        self, sandbox_id: str, external_id: str
    ) -> Optional[ChatSession]:
        """Get a session by its runtime-assigned ID."""
        return await self._get_chat_session_where(
            "sandbox_id = ? AND external_id = ?", (sandbox_id, external_id)
        )

    async def _get_chat_session_where(
        self, clause: str, params: tuple[Any, ...]
    ) -> Optional[ChatSession]:
        async with self.connection.execute(
            f"SELECT * FROM chat_sessions WHERE {clause}", params
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                return self._row_to_chat_session(row)
            return None

    async def list_chat_sessions(
        self,
        sandbox_id: str,
        status: Optional[ChatSessionStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ChatSession]:
        """List a sandbox's sessions, most recently active first."""
        query = "SELECT * FROM chat_sessions WHERE sandbox_id = ?"
        params: list[Any] = [sandbox_id]

        if status is not None:
            query += " AND status = ?"
            params.append(status.value)

        query += f" {_SESSION_ORDER} LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with self.connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_chat_session(row) for row in rows]

    async def count_chat_sessions(
        self, sandbox_id: str, status: Optional[ChatSessionStatus] = None
    ) -> int:
        """Count a sandbox's sessions."""
        query = "SELECT COUNT(*) FROM chat_sessions WHERE sandbox_id = ?"
        params: list[Any] = [sandbox_id]

        if status is not None:
            query += " AND status = ?"
            params.append(status.value)

        async with self.connection.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def get_chat_stats(self, sandbox_id: str) -> SessionStats:
        """Session and message totals for one sandbox."""
        async with self.connection.execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0) AS active,
                COALESCE(SUM(CASE WHEN status = 'archived' THEN 1 ELSE 0 END), 0) AS archived,
                COALESCE(SUM(message_count), 0) AS total_messages
            FROM chat_sessions
            WHERE sandbox_id = ?
            """,
            (sandbox_id,),
        ) as cursor:
            row = await cursor.fetchone()
            return SessionStats(
                total=row["total"],
                active=row["active"],
                archived=row["archived"],
                total_messages=row["total_messages"],
            )

    async def update_chat_session_title(
        self, session_id: str, title: str
    ) -> Optional[ChatSession]:
        await self.connection.execute(
            "UPDATE chat_sessions SET title = ?, updated_at = ? WHERE id = ?",
            (title, _ts(_now()), session_id),
        )
        await self.connection.commit()
        return await self.get_chat_session(session_id)

    async def archive_chat_session(self, session_id: str) -> Optional[ChatSession]:
        """Mark a session archived. Repeated calls leave the row unchanged."""
        await self.connection.execute(
            """
            UPDATE chat_sessions SET status = 'archived', updated_at = ?
            WHERE id = ? AND status != 'archived'
            """,
            (_ts(_now()), session_id),
        )
        await self.connection.commit()
        return await self.get_chat_session(session_id)

    async def refresh_session_counters(
        self, session_id: str, synced: bool = False
    ) -> None:
        """Recompute message_count and last_message_at from the messages table."""
        now = _ts(_now())
        query = """
            UPDATE chat_sessions SET
                message_count = (SELECT COUNT(*) FROM chat_messages WHERE session_id = ?),
                last_message_at = (SELECT MAX(created_at) FROM chat_messages WHERE session_id = ?),
                updated_at = ?
        """
        params: list[Any] = [session_id, session_id, now]
        if synced:
            query += ", last_synced_at = ?"
            params.append(now)
        query += " WHERE id = ?"
        params.append(session_id)

        await self.connection.execute(query, params)
        await self.connection.commit()

    # =========================================================================
    # Chat messages
    # =========================================================================

    async def add_chat_message(
        self,
        session_id: str,
        role: MessageRole,
        content: Any,
        created_at: Optional[datetime] = None,
    ) -> ChatMessage:
        """Append a message that has no runtime counterpart."""
        message_id = str(uuid.uuid4())
        now = _ts(_now())
        await self.connection.execute(
            """
            INSERT INTO chat_messages (
                id, session_id, external_id, role, content, created_at, updated_at
            ) VALUES (?, ?, NULL, ?, ?, ?, ?)
            """,
            (
                message_id,
                session_id,
                role.value,
                json.dumps(content),
                _ts(created_at) or now,
                now,
            ),
        )
        await self.connection.commit()
        await self.refresh_session_counters(session_id)
        return await self.get_chat_message(message_id)  # type: ignore

    async def upsert_chat_message(
        self,
        session_id: str,
        external_id: str,
        role: MessageRole,
        content: Any,
        created_at: Optional[datetime] = None,
    ) -> tuple[ChatMessage, bool]:
        """Insert or update a mirrored message keyed by its runtime ID.

        The first insert fixes created_at; later calls replace content and
        role only when they differ. Returns (message, created).
        """
        existing = await self.get_chat_message_by_external_id(session_id, external_id)
        now = _ts(_now())
        content_json = json.dumps(content)

        await self.connection.execute(
            """
            INSERT INTO chat_messages (
                id, session_id, external_id, role, content, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id, external_id) DO UPDATE SET
                role = excluded.role,
                content = excluded.content,
                updated_at = excluded.updated_at
            WHERE chat_messages.content IS NOT excluded.content
               OR chat_messages.role IS NOT excluded.role
            """,
            (
                str(uuid.uuid4()),
                session_id,
                external_id,
                role.value,
                content_json,
                _ts(created_at) or now,
                now,
            ),
        )
        await self.connection.commit()

        message = await self.get_chat_message_by_external_id(session_id, external_id)
        return message, existing is None  # type: ignore

    async def get_chat_message(self, message_id: str) -> Optional[ChatMessage]:
        async with self.connection.execute(
            "SELECT * FROM chat_messages WHERE id = ?", (message_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_chat_message(row) if row else None

    async def get_chat_message_by_external_id(
        self, session_id: str, external_id: str
    ) -> Optional[ChatMessage]:
        async with self.connection.execute(
            "SELECT * FROM chat_messages WHERE session_id = ? AND external_id = ?",
            (session_id, external_id),
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_chat_message(row) if row else None

    async def list_chat_messages(
        self,
        session_id: str,
        limit: int = 50,
        offset: int = 0,
        order: MessageOrder = MessageOrder.ASC,
    ) -> list[ChatMessage]:
        """List messages in (created_at, seq) order; desc is the exact reverse."""
        direction = "DESC" if order == MessageOrder.DESC else "ASC"
        async with self.connection.execute(
            f"""
            SELECT * FROM chat_messages WHERE session_id = ?
            ORDER BY created_at {direction}, seq {direction}
            LIMIT ? OFFSET ?
            """,
            (session_id, limit, offset),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_chat_message(row) for row in rows]

    async def count_chat_messages(self, session_id: str) -> int:
        async with self.connection.execute(
            "SELECT COUNT(*) FROM chat_messages WHERE session_id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    # =========================================================================
    # Helpers
    # =========================================================================

    def _row_to_sandbox(self, row: aiosqlite.Row) -> Sandbox:
        """Convert a database row to a Sandbox model."""
        return Sandbox(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            status=SandboxStatus(row["status"]),
            container_id=row["container_id"],
            image=row["image"],
            urls=json.loads(row["urls"]) if row["urls"] else {},
            labels=json.loads(row["labels"]) if row["labels"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_chat_session(self, row: aiosqlite.Row) -> ChatSession:
        """Convert a database row to a ChatSession model."""
        return ChatSession(
            id=row["id"],
            sandbox_id=row["sandbox_id"],
            user_id=row["user_id"],
            source=ChatSessionSource(row["source"]),
            external_id=row["external_id"],
            unique_key=row["unique_key"],
            title=row["title"],
            status=ChatSessionStatus(row["status"]),
            message_count=row["message_count"],
            last_message_at=_parse_ts(row["last_message_at"]),
            last_synced_at=_parse_ts(row["last_synced_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_chat_message(self, row: aiosqlite.Row) -> ChatMessage:
        """Convert a database row to a ChatMessage model."""
        return ChatMessage(
            id=row["id"],
            session_id=row["session_id"],
            external_id=row["external_id"],
            role=MessageRole(row["role"]),
            content=json.loads(row["content"]) if row["content"] is not None else None,
            created_at=datetime.fromisoformat(row["created_at"]),
        )


# Global database instance
_database: Optional[Database] = None


async def init_database(db_path: Path) -> Database:
    """Initialize the global database instance."""
    global _database
    _database = Database(db_path)
    await _database.connect()
    return _database


async def close_database() -> None:
    """Close the global database instance."""
    global _database
    if _database:
        await _database.close()
        _database = None
