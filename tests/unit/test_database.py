"""
Unit tests for the SQLite registry and chat store.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from capsule.lib.errors import ConflictError
from capsule.models.chat import (
    ChatSessionSource,
    ChatSessionStatus,
    MessageOrder,
    MessageRole,
)
from capsule.models.sandbox import Sandbox, SandboxStatus


def _sandbox(sandbox_id: str, owner_id: str | None = None, status=SandboxStatus.CREATED) -> Sandbox:
    now = datetime.now(timezone.utc)
    return Sandbox(
        id=sandbox_id,
        owner_id=owner_id,
        name=f"Sandbox {sandbox_id}",
        status=status,
        container_id=None,
        image="capsule-sandbox:latest",
        created_at=now,
        updated_at=now,
    )


# =============================================================================
# Sandbox registry
# =============================================================================


@pytest.mark.asyncio
async def test_create_and_get_sandbox(test_database):
    """Test registering a sandbox and reading it back."""
    await test_database.create_sandbox(_sandbox("sb-1", owner_id="alice"))

    sandbox = await test_database.get_sandbox("sb-1")

    assert sandbox is not None
    assert sandbox.owner_id == "alice"
    assert sandbox.status == SandboxStatus.CREATED


@pytest.mark.asyncio
async def test_create_duplicate_sandbox_conflicts(test_database):
    """Test that a second row with the same ID is refused."""
    await test_database.create_sandbox(_sandbox("sb-1"))

    with pytest.raises(ConflictError):
        await test_database.create_sandbox(_sandbox("sb-1"))


@pytest.mark.asyncio
async def test_list_sandboxes_filters(test_database):
    """Test filtering the registry by status and owner."""
    await test_database.create_sandbox(_sandbox("a", owner_id="alice", status=SandboxStatus.RUNNING))
    await test_database.create_sandbox(_sandbox("b", owner_id="bob", status=SandboxStatus.STOPPED))
    await test_database.create_sandbox(_sandbox("c", owner_id="alice", status=SandboxStatus.STOPPED))

    running = await test_database.list_sandboxes(statuses={SandboxStatus.RUNNING})
    alices = await test_database.list_sandboxes(owner_id="alice")

    assert [s.id for s in running] == ["a"]
    assert {s.id for s in alices} == {"a", "c"}


@pytest.mark.asyncio
async def test_update_state_binds_container_once(test_database):
    """Test that container_id is written once and never silently replaced."""
    await test_database.create_sandbox(_sandbox("sb-1"))

    updated = await test_database.update_sandbox_state("sb-1", SandboxStatus.RUNNING, container_id="abc")
    assert updated.container_id == "abc"
    assert updated.status == SandboxStatus.RUNNING

    with pytest.raises(ConflictError):
        await test_database.update_sandbox_state("sb-1", SandboxStatus.RUNNING, container_id="def")


@pytest.mark.asyncio
async def test_update_state_missing_row(test_database):
    """Test updating a sandbox that isn't registered."""
    assert await test_database.update_sandbox_state("nope", SandboxStatus.STOPPED) is None


@pytest.mark.asyncio
async def test_delete_sandbox_keeps_chat_history(test_database):
    """Test that removing the registry row leaves sessions and messages."""
    await test_database.create_sandbox(_sandbox("sb-1"))
    session, _ = await test_database.create_chat_session("sb-1", title="kept")
    await test_database.add_chat_message(session.id, MessageRole.USER, "hello")

    assert await test_database.delete_sandbox("sb-1") is True
    assert await test_database.get_sandbox("sb-1") is None

    kept = await test_database.get_sandbox_chat_session("sb-1", session.id)
    assert kept is not None
    assert kept.message_count == 1


# =============================================================================
# Chat sessions
# =============================================================================


@pytest.mark.asyncio
async def test_create_chat_session_defaults(test_database):
    """Test a new session starts active and empty."""
    session, created = await test_database.create_chat_session("sb-1", user_id="alice")

    assert created is True
    assert session.status == ChatSessionStatus.ACTIVE
    assert session.source == ChatSessionSource.API
    assert session.message_count == 0
    assert session.last_message_at is None


@pytest.mark.asyncio
async def test_unique_key_returns_existing(test_database):
    """Test that a second create with the same unique key returns the first session."""
    first, created_first = await test_database.create_chat_session("sb-1", unique_key="onboarding")
    second, created_second = await test_database.create_chat_session("sb-1", unique_key="onboarding")

    assert created_first is True
    assert created_second is False
    assert second.id == first.id


@pytest.mark.asyncio
async def test_unique_key_is_per_sandbox(test_database):
    """Test that the same key in two sandboxes yields two sessions."""
    a, _ = await test_database.create_chat_session("sb-1", unique_key="onboarding")
    b, _ = await test_database.create_chat_session("sb-2", unique_key="onboarding")

    assert a.id != b.id


@pytest.mark.asyncio
async def test_concurrent_unique_key_creates_one_session(test_database):
    """Test concurrent creators with one unique key converge on a single row."""
    results = await asyncio.gather(
        *(test_database.create_chat_session("sb-1", unique_key="setup") for _ in range(3))
    )

    assert len({session.id for session, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1
    assert await test_database.count_chat_sessions("sb-1") == 1


@pytest.mark.asyncio
async def test_sessions_without_key_are_unlimited(test_database):
    """Test that sessions without a unique key never collide."""
    for _ in range(3):
        await test_database.create_chat_session("sb-1")

    assert await test_database.count_chat_sessions("sb-1") == 3


@pytest.mark.asyncio
async def test_session_lookup_is_sandbox_scoped(test_database):
    """Test that a session can't be read through another sandbox."""
    session, _ = await test_database.create_chat_session("sb-1")

    assert await test_database.get_sandbox_chat_session("sb-1", session.id) is not None
    assert await test_database.get_sandbox_chat_session("sb-2", session.id) is None


@pytest.mark.asyncio
async def test_list_sessions_order(test_database):
    """Test most recent activity first, sessions without messages last."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    quiet, _ = await test_database.create_chat_session("sb-1", title="quiet", created_at=base)
    old, _ = await test_database.create_chat_session("sb-1", title="old", created_at=base)
    recent, _ = await test_database.create_chat_session("sb-1", title="recent", created_at=base)

    await test_database.add_chat_message(old.id, MessageRole.USER, "a", created_at=base + timedelta(hours=1))
    await test_database.add_chat_message(recent.id, MessageRole.USER, "b", created_at=base + timedelta(hours=2))

    sessions = await test_database.list_chat_sessions("sb-1")

    assert [s.title for s in sessions] == ["recent", "old", "quiet"]


@pytest.mark.asyncio
async def test_archive_is_idempotent(test_database):
    """Test that archiving twice leaves the row as the first archive left it."""
    session, _ = await test_database.create_chat_session("sb-1")

    first = await test_database.archive_chat_session(session.id)
    second = await test_database.archive_chat_session(session.id)

    assert first.status == ChatSessionStatus.ARCHIVED
    assert second.status == ChatSessionStatus.ARCHIVED
    assert second.updated_at == first.updated_at


@pytest.mark.asyncio
async def test_chat_stats(test_database):
    """Test per-sandbox session and message totals."""
    a, _ = await test_database.create_chat_session("sb-1")
    b, _ = await test_database.create_chat_session("sb-1")
    await test_database.create_chat_session("sb-2")
    await test_database.add_chat_message(a.id, MessageRole.USER, "one")
    await test_database.add_chat_message(a.id, MessageRole.ASSISTANT, "two")
    await test_database.archive_chat_session(b.id)

    stats = await test_database.get_chat_stats("sb-1")

    assert stats.total == 2
    assert stats.active == 1
    assert stats.archived == 1
    assert stats.total_messages == 2


@pytest.mark.asyncio
async def test_chat_stats_empty_sandbox(test_database):
    """Test stats for a sandbox with no sessions."""
    stats = await test_database.get_chat_stats("empty")

    assert (stats.total, stats.active, stats.archived, stats.total_messages) == (0, 0, 0, 0)


# =============================================================================
# Chat messages
# =============================================================================


@pytest.mark.asyncio
async def test_content_stored_verbatim(test_database):
    """Test that structured content round-trips unchanged."""
    session, _ = await test_database.create_chat_session("sb-1")
    content = {"parts": [{"type": "text", "text": "héllo"}], "model": None, "nested": [1, 2.5, True]}

    message = await test_database.add_chat_message(session.id, MessageRole.ASSISTANT, content)
    fetched = await test_database.get_chat_message(message.id)

    assert fetched.content == content


@pytest.mark.asyncio
async def test_add_message_updates_counters(test_database):
    """Test message_count and last_message_at follow inserts."""
    session, _ = await test_database.create_chat_session("sb-1")
    when = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    await test_database.add_chat_message(session.id, MessageRole.USER, "hi", created_at=when)
    refreshed = await test_database.get_chat_session(session.id)

    assert refreshed.message_count == 1
    assert refreshed.last_message_at == when


@pytest.mark.asyncio
async def test_message_order_ties_keep_insertion_order(test_database):
    """Test equal timestamps are ordered by insertion, and desc is the exact reverse."""
    session, _ = await test_database.create_chat_session("sb-1")
    when = datetime(2024, 5, 1, tzinfo=timezone.utc)
    for i in range(4):
        await test_database.add_chat_message(session.id, MessageRole.USER, f"m{i}", created_at=when)

    asc = await test_database.list_chat_messages(session.id, order=MessageOrder.ASC)
    desc = await test_database.list_chat_messages(session.id, order=MessageOrder.DESC)

    assert [m.content for m in asc] == ["m0", "m1", "m2", "m3"]
    assert [m.id for m in desc] == [m.id for m in reversed(asc)]


@pytest.mark.asyncio
async def test_upsert_message_dedupes_by_external_id(test_database):
    """Test that upserting the same runtime message twice keeps one row."""
    session, _ = await test_database.create_chat_session("sb-1")
    when = datetime(2024, 5, 1, tzinfo=timezone.utc)

    first, created = await test_database.upsert_chat_message(session.id, "msg_1", MessageRole.USER, {"v": 1}, when)
    second, created_again = await test_database.upsert_chat_message(
        session.id, "msg_1", MessageRole.USER, {"v": 2}, when + timedelta(days=1)
    )

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert second.content == {"v": 2}
    # The first insert fixes created_at
    assert second.created_at == when
    assert await test_database.count_chat_messages(session.id) == 1
