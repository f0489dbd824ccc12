"""
Unit tests for the chat sync engine.
"""

import asyncio

import pytest

from capsule.lib.errors import (
    InvalidStateError,
    SandboxNotFoundError,
    SandboxNotRunningError,
    SessionNotFoundError,
)
from capsule.models.chat import ChatSessionSource, ChatSessionStatus, MessageRole
from capsule.models.runtime import RuntimeEvent


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# =============================================================================
# Status
# =============================================================================


@pytest.mark.asyncio
async def test_sync_status_unknown_sandbox(sync_engine):
    with pytest.raises(SandboxNotFoundError):
        await sync_engine.get_sync_status("missing")


@pytest.mark.asyncio
async def test_sync_status_of_stopped_sandbox(sync_engine, orchestrator, running_sandbox, runtime):
    """Test that status is served from the store even while stopped."""
    runtime.available = False
    await orchestrator.stop_sandbox("sb-1")

    status = await sync_engine.get_sync_status("sb-1")

    assert status.sandbox_status == "stopped"
    assert status.sync.active is False
    assert status.stats.total == 0


# =============================================================================
# Full sync
# =============================================================================


@pytest.mark.asyncio
async def test_sync_all_mirrors_sessions_and_messages(sync_engine, running_sandbox, runtime, test_database):
    """Test a first sync creates every session and message."""
    runtime.add_session("ses_a", "Alpha")
    runtime.add_message("ses_a", "msg_1", "user", "hello")
    runtime.add_message("ses_a", "msg_2", "assistant", "hi there", providerID="anthropic", modelID="claude")
    runtime.add_session("ses_b", "Beta")

    result = await sync_engine.sync_all("sb-1")

    assert result.sessions_synced == 2
    assert result.sessions_created == 2
    assert result.messages_created == 2
    assert result.errors == []

    session = await test_database.get_chat_session_by_external_id("sb-1", "ses_a")
    assert session.title == "Alpha"
    assert session.source == ChatSessionSource.AGENT_RUNTIME
    assert session.message_count == 2
    assert session.last_synced_at is not None

    messages = await test_database.list_chat_messages(session.id)
    assert [m.external_id for m in messages] == ["msg_1", "msg_2"]
    assert messages[1].role == MessageRole.ASSISTANT
    assert messages[1].content["model"] == {"providerID": "anthropic", "modelID": "claude"}


@pytest.mark.asyncio
async def test_sync_is_idempotent(sync_engine, running_sandbox, runtime, test_database):
    """Test that syncing twice without runtime changes adds nothing."""
    runtime.add_session("ses_a", "Alpha")
    runtime.add_message("ses_a", "msg_1", "user", "hello")

    await sync_engine.sync_all("sb-1")
    second = await sync_engine.sync_all("sb-1")

    assert second.sessions_created == 0
    assert second.messages_created == 0
    stats = await test_database.get_chat_stats("sb-1")
    assert stats.total == 1
    assert stats.total_messages == 1


@pytest.mark.asyncio
async def test_content_fidelity(sync_engine, running_sandbox, runtime, test_database):
    """Test the stored content equals the runtime's parts, model and time."""
    runtime.add_session("ses_a")
    original = runtime.add_message("ses_a", "msg_1", "assistant", "answer", model={"id": "m"})

    await sync_engine.sync_all("sb-1")

    session = await test_database.get_chat_session_by_external_id("sb-1", "ses_a")
    stored = await test_database.get_chat_message_by_external_id(session.id, "msg_1")
    assert stored.content == {
        "parts": original.parts,
        "model": {"id": "m"},
        "time": original.info["time"],
    }


@pytest.mark.asyncio
async def test_edited_message_last_write_wins(sync_engine, running_sandbox, runtime, test_database):
    """Test a re-sync replaces content of an already mirrored message."""
    runtime.add_session("ses_a")
    runtime.add_message("ses_a", "msg_1", "assistant", "draft")
    await sync_engine.sync_all("sb-1")

    runtime.edit_message("ses_a", "msg_1", "final")
    await sync_engine.sync_all("sb-1")

    session = await test_database.get_chat_session_by_external_id("sb-1", "ses_a")
    stored = await test_database.get_chat_message_by_external_id(session.id, "msg_1")
    assert stored.content["parts"][0]["text"] == "final"
    assert await test_database.count_chat_messages(session.id) == 1


@pytest.mark.asyncio
async def test_runtime_deletion_is_not_propagated(sync_engine, running_sandbox, runtime, test_database):
    """Test that a session vanishing from the runtime stays in the store."""
    runtime.add_session("ses_a")
    runtime.add_message("ses_a", "msg_1", "user", "hello")
    await sync_engine.sync_all("sb-1")

    runtime.reset()
    await sync_engine.sync_all("sb-1")

    session = await test_database.get_chat_session_by_external_id("sb-1", "ses_a")
    assert session is not None
    assert session.message_count == 1


@pytest.mark.asyncio
async def test_title_follows_runtime(sync_engine, running_sandbox, runtime, test_database):
    runtime.add_session("ses_a", "Untitled")
    await sync_engine.sync_all("sb-1")

    runtime.sessions["ses_a"].title = "Refactor auth"
    await sync_engine.sync_all("sb-1")

    session = await test_database.get_chat_session_by_external_id("sb-1", "ses_a")
    assert session.title == "Refactor auth"


@pytest.mark.asyncio
async def test_unknown_role_maps_to_assistant(sync_engine, running_sandbox, runtime, test_database):
    runtime.add_session("ses_a")
    runtime.add_message("ses_a", "msg_1", "narrator", "once upon a time")

    await sync_engine.sync_all("sb-1")

    session = await test_database.get_chat_session_by_external_id("sb-1", "ses_a")
    stored = await test_database.get_chat_message_by_external_id(session.id, "msg_1")
    assert stored.role == MessageRole.ASSISTANT


@pytest.mark.asyncio
async def test_sync_requires_running(sync_engine, orchestrator, running_sandbox, runtime):
    """Test that sync of a stopped sandbox fails before contacting the runtime."""
    await orchestrator.stop_sandbox("sb-1")
    runtime.add_session("ses_a")

    with pytest.raises(SandboxNotRunningError) as exc_info:
        await sync_engine.sync_all("sb-1")
    assert "running" in str(exc_info.value)

    with pytest.raises(SandboxNotRunningError):
        await sync_engine.sync_session("sb-1", "ses_a")


@pytest.mark.asyncio
async def test_sync_unknown_sandbox(sync_engine):
    with pytest.raises(SandboxNotFoundError):
        await sync_engine.sync_all("missing")


@pytest.mark.asyncio
async def test_sync_session_by_runtime_or_local_id(sync_engine, running_sandbox, runtime):
    """Test single-session sync addressed either way."""
    runtime.add_session("ses_a", "Alpha")
    runtime.add_message("ses_a", "msg_1", "user", "hello")

    by_runtime_id = await sync_engine.sync_session("sb-1", "ses_a")
    assert by_runtime_id.external_id == "ses_a"
    assert by_runtime_id.message_count == 1

    runtime.add_message("ses_a", "msg_2", "assistant", "hi")
    by_local_id = await sync_engine.sync_session("sb-1", by_runtime_id.id)
    assert by_local_id.id == by_runtime_id.id
    assert by_local_id.message_count == 2


@pytest.mark.asyncio
async def test_sync_session_missing_in_runtime(sync_engine, running_sandbox):
    with pytest.raises(SessionNotFoundError):
        await sync_engine.sync_session("sb-1", "ses_nope")


@pytest.mark.asyncio
async def test_concurrent_sync_of_one_session(sync_engine, running_sandbox, runtime, test_database):
    """Test that racing syncs of the same session produce one row."""
    runtime.add_session("ses_a")
    runtime.add_message("ses_a", "msg_1", "user", "hello")

    await asyncio.gather(
        sync_engine.sync_session("sb-1", "ses_a"),
        sync_engine.sync_session("sb-1", "ses_a"),
        sync_engine.sync_all("sb-1"),
    )

    assert await test_database.count_chat_sessions("sb-1") == 1
    stats = await test_database.get_chat_stats("sb-1")
    assert stats.total_messages == 1


# =============================================================================
# Runtime-backed sessions
# =============================================================================


@pytest.mark.asyncio
async def test_send_message_persists_exchange(sync_engine, running_sandbox, runtime, test_database):
    """Test that a forwarded prompt and the reply both end up in the store."""
    session = await sync_engine.create_runtime_session("sb-1", "Chat")

    updated = await sync_engine.send_message("sb-1", session.id, "ping")

    assert updated.message_count == 2
    messages = await test_database.list_chat_messages(session.id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[1].content["parts"][0]["text"] == "echo: ping"


@pytest.mark.asyncio
async def test_send_message_to_local_only_session(sync_engine, chat_store, running_sandbox):
    """Test that a session created only in the store can't be prompted."""
    result = await chat_store.create_session("sb-1")

    with pytest.raises(InvalidStateError):
        await sync_engine.send_message("sb-1", result.session.id, "ping")


# =============================================================================
# Events
# =============================================================================


@pytest.mark.asyncio
async def test_session_deleted_event_archives(sync_engine, running_sandbox, runtime, test_database):
    """Test that a runtime deletion archives rather than removes."""
    runtime.add_session("ses_a")
    runtime.add_message("ses_a", "msg_1", "user", "hello")
    await sync_engine.sync_all("sb-1")

    await sync_engine.apply_event("sb-1", RuntimeEvent(type="session.deleted", properties={"info": {"id": "ses_a"}}))

    session = await test_database.get_chat_session_by_external_id("sb-1", "ses_a")
    assert session.status == ChatSessionStatus.ARCHIVED
    assert await test_database.count_chat_messages(session.id) == 1


@pytest.mark.asyncio
async def test_message_events_build_content(sync_engine, running_sandbox, test_database):
    """Test that message.updated then message.part.updated assemble a message."""
    info = {"id": "msg_1", "sessionID": "ses_a", "role": "assistant", "time": {"created": 1_700_000_000_000}}
    await sync_engine.apply_event("sb-1", RuntimeEvent(type="message.updated", properties={"info": info}))

    part = {"id": "prt_1", "messageID": "msg_1", "sessionID": "ses_a", "type": "text", "text": "Hel"}
    await sync_engine.apply_event("sb-1", RuntimeEvent(type="message.part.updated", properties={"part": part}))
    await sync_engine.apply_event(
        "sb-1", RuntimeEvent(type="message.part.updated", properties={"part": {**part, "text": "Hello"}})
    )

    session = await test_database.get_chat_session_by_external_id("sb-1", "ses_a")
    message = await test_database.get_chat_message_by_external_id(session.id, "msg_1")
    assert message.role == MessageRole.ASSISTANT
    assert [p["text"] for p in message.content["parts"]] == ["Hello"]
    assert session.message_count == 1


@pytest.mark.asyncio
async def test_events_for_unregistered_sandbox_are_dropped(sync_engine, test_database):
    await sync_engine.apply_event(
        "ghost", RuntimeEvent(type="session.created", properties={"info": {"id": "ses_a"}})
    )

    assert await test_database.count_chat_sessions("ghost") == 0


# =============================================================================
# Live sync
# =============================================================================


@pytest.mark.asyncio
async def test_live_sync_applies_events(sync_engine, running_sandbox, runtime, test_database):
    """Test that a live subscription mirrors events as they arrive."""
    assert await sync_engine.start_live_sync("sb-1") is True
    assert sync_engine.is_live("sb-1")

    runtime.push_event("session.created", {"info": {"id": "ses_live", "title": "Live"}})

    async def mirrored():
        return await test_database.get_chat_session_by_external_id("sb-1", "ses_live") is not None

    await _wait_for(mirrored)

    status = await sync_engine.get_sync_status("sb-1")
    assert status.sync.active is True

    await sync_engine.stop_live_sync("sb-1")
    assert not sync_engine.is_live("sb-1")


@pytest.mark.asyncio
async def test_live_sync_skips_malformed_events(sync_engine, running_sandbox, runtime, test_database):
    """Test that malformed events are skipped without ending the subscription."""
    await sync_engine.start_live_sync("sb-1")

    runtime.push_event("session.updated", {"info": {"id": "ses_bad", "title": 123}})
    runtime.push_event("session.updated", {"info": "ses_bad"})
    runtime.push_event("message.updated", {"info": {"id": "msg_1", "sessionID": ["ses_bad"]}})
    runtime.push_event("message.part.updated", {"part": {"messageID": 7, "sessionID": "ses_bad"}})
    runtime.push_event("session.created", {"info": {"id": "ses_good", "title": "Good"}})

    async def mirrored():
        return await test_database.get_chat_session_by_external_id("sb-1", "ses_good") is not None

    await _wait_for(mirrored)

    assert await test_database.get_chat_session_by_external_id("sb-1", "ses_bad") is None
    assert sync_engine.is_live("sb-1")
    assert runtime.subscriptions == 1

    await sync_engine.stop_live_sync("sb-1")


@pytest.mark.asyncio
async def test_live_sync_reconnects_after_unexpected_error(sync_engine, running_sandbox, runtime, monkeypatch):
    """Test that an unexpected error while applying an event goes through reconnect."""
    calls = []

    async def failing_apply(sandbox_id, event):
        calls.append(event.type)
        raise RuntimeError("boom")

    monkeypatch.setattr(sync_engine, "apply_event", failing_apply)
    await sync_engine.start_live_sync("sb-1")

    async def subscribed_once():
        return runtime.subscriptions >= 1

    await _wait_for(subscribed_once)
    runtime.push_event("session.created", {"info": {"id": "ses_x"}})

    async def resubscribed():
        return runtime.subscriptions >= 2

    await _wait_for(resubscribed)
    assert calls == ["session.created"]
    assert sync_engine.is_live("sb-1")

    await sync_engine.stop_live_sync("sb-1")


@pytest.mark.asyncio
async def test_apply_event_ignores_malformed_payloads(sync_engine, running_sandbox, test_database):
    await sync_engine.apply_event("sb-1", RuntimeEvent(type="message.updated", properties={"info": 42}))
    await sync_engine.apply_event(
        "sb-1",
        RuntimeEvent(
            type="message.updated",
            properties={"info": {"id": "msg_1", "sessionID": "ses_a", "time": "yesterday"}},
        ),
    )

    assert await test_database.get_chat_session_by_external_id("sb-1", "ses_a") is None


@pytest.mark.asyncio
async def test_live_sync_not_started_for_stopped_sandbox(sync_engine, orchestrator, running_sandbox):
    await orchestrator.stop_sandbox("sb-1")

    assert await sync_engine.start_live_sync("sb-1") is False
    assert not sync_engine.is_live("sb-1")


@pytest.mark.asyncio
async def test_live_sync_reconnects_after_drop(sync_engine, running_sandbox, runtime):
    """Test that a dropped feed is resubscribed."""
    await sync_engine.start_live_sync("sb-1")

    async def subscribed_once():
        return runtime.subscriptions >= 1

    await _wait_for(subscribed_once)
    runtime.end_events()

    async def resubscribed():
        return runtime.subscriptions >= 2

    await _wait_for(resubscribed)
    assert sync_engine.is_live("sb-1")


@pytest.mark.asyncio
async def test_live_sync_gives_up_after_max_attempts(sync_engine, running_sandbox, runtime):
    """Test that an unreachable runtime ends live sync once reconnect attempts run out."""
    runtime.available = False
    await sync_engine.start_live_sync("sb-1")

    async def gave_up():
        return not sync_engine.is_live("sb-1")

    await _wait_for(gave_up)


@pytest.mark.asyncio
async def test_stop_all(sync_engine, orchestrator, running_sandbox):
    from capsule.models.sandbox import SandboxConfig

    await orchestrator.create_sandbox(SandboxConfig(id="sb-2", name="Two"))
    await sync_engine.start_live_sync("sb-1")
    await sync_engine.start_live_sync("sb-2")

    await sync_engine.stop_all()

    assert not sync_engine.is_live("sb-1")
    assert not sync_engine.is_live("sb-2")
