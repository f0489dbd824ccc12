"""
Unit tests for sandbox-scoped chat queries.
"""

import asyncio

import pytest

from capsule.lib.errors import InvalidStateError, SessionNotFoundError, ValidationError
from capsule.models.chat import ChatSessionStatus, MessageOrder, MessageRole


@pytest.mark.asyncio
async def test_empty_listing(chat_store):
    """Test the listing of a sandbox with no sessions."""
    page = await chat_store.list_sessions("sb-1")

    assert page.sessions == []
    assert page.pagination.model_dump() == {"total": 0, "limit": 20, "offset": 0}
    assert page.stats.model_dump() == {"total": 0, "active": 0}


@pytest.mark.asyncio
async def test_archive_hides_from_active_listing(chat_store):
    """Test that an archived session leaves the active listing but stays readable."""
    result = await chat_store.create_session("sb-1", title="first")
    session_id = result.session.id

    await chat_store.archive_session("sb-1", session_id)

    active = await chat_store.list_sessions("sb-1", status=ChatSessionStatus.ACTIVE)
    assert active.sessions == []
    assert active.pagination.total == 0
    assert active.stats.total == 1
    assert active.stats.active == 0

    session = await chat_store.get_session("sb-1", session_id)
    assert session.status == ChatSessionStatus.ARCHIVED


@pytest.mark.asyncio
async def test_archive_twice(chat_store):
    """Test that archiving an archived session is a harmless no-op."""
    result = await chat_store.create_session("sb-1")
    first = await chat_store.archive_session("sb-1", result.session.id)
    second = await chat_store.archive_session("sb-1", result.session.id)

    assert second.status == ChatSessionStatus.ARCHIVED
    assert second.updated_at == first.updated_at


@pytest.mark.asyncio
async def test_archive_keeps_messages(chat_store):
    """Test that archiving never touches the session's messages."""
    result = await chat_store.create_session("sb-1")
    session_id = result.session.id
    await chat_store.add_message("sb-1", session_id, MessageRole.USER, "keep me")

    await chat_store.archive_session("sb-1", session_id)
    page = await chat_store.list_messages("sb-1", session_id)

    assert [m.content for m in page.messages] == ["keep me"]


@pytest.mark.asyncio
async def test_cross_sandbox_isolation(chat_store):
    """Test that another sandbox's session is reported as missing."""
    result = await chat_store.create_session("sb-1")
    session_id = result.session.id

    with pytest.raises(SessionNotFoundError):
        await chat_store.get_session("sb-2", session_id)
    with pytest.raises(SessionNotFoundError):
        await chat_store.list_messages("sb-2", session_id)
    with pytest.raises(SessionNotFoundError):
        await chat_store.archive_session("sb-2", session_id)
    with pytest.raises(SessionNotFoundError):
        await chat_store.add_message("sb-2", session_id, MessageRole.USER, "x")

    assert (await chat_store.list_sessions("sb-2")).sessions == []


@pytest.mark.asyncio
async def test_pagination_covers_every_session(chat_store):
    """Test that consecutive pages are disjoint and together list everything."""
    for i in range(7):
        await chat_store.create_session("sb-1", title=f"s{i}")

    seen = []
    offset = 0
    while True:
        page = await chat_store.list_sessions("sb-1", limit=3, offset=offset)
        assert page.pagination.total == 7
        if not page.sessions:
            break
        seen.extend(s.id for s in page.sessions)
        offset += 3

    assert len(seen) == 7
    assert len(set(seen)) == 7


@pytest.mark.asyncio
async def test_message_order_symmetry(chat_store):
    """Test that desc order is the exact reverse of asc."""
    result = await chat_store.create_session("sb-1")
    session_id = result.session.id
    for i in range(5):
        await chat_store.add_message("sb-1", session_id, MessageRole.USER, f"m{i}")

    asc = await chat_store.list_messages("sb-1", session_id, order=MessageOrder.ASC)
    desc = await chat_store.list_messages("sb-1", session_id, order=MessageOrder.DESC)

    assert [m.id for m in desc.messages] == [m.id for m in reversed(asc.messages)]
    assert asc.pagination.total == 5


@pytest.mark.asyncio
async def test_page_bounds_are_validated(chat_store):
    with pytest.raises(ValidationError):
        await chat_store.list_sessions("sb-1", limit=0)
    with pytest.raises(ValidationError):
        await chat_store.list_sessions("sb-1", limit=101)
    with pytest.raises(ValidationError):
        await chat_store.list_sessions("sb-1", offset=-1)


@pytest.mark.asyncio
async def test_concurrent_create_with_unique_key(chat_store):
    """Test three concurrent creates with one key yield a single session."""
    results = await asyncio.gather(
        *(chat_store.create_session("sb-1", unique_key="onboarding") for _ in range(3))
    )

    assert len({r.session.id for r in results}) == 1
    assert [r.created for r in results].count(True) == 1


@pytest.mark.asyncio
async def test_add_message_to_archived_session(chat_store):
    """Test that archived sessions no longer accept messages."""
    result = await chat_store.create_session("sb-1")
    await chat_store.archive_session("sb-1", result.session.id)

    with pytest.raises(InvalidStateError):
        await chat_store.add_message("sb-1", result.session.id, MessageRole.USER, "late")


@pytest.mark.asyncio
async def test_get_stats(chat_store):
    result = await chat_store.create_session("sb-1")
    await chat_store.add_message("sb-1", result.session.id, MessageRole.USER, "hi")

    stats = await chat_store.get_stats("sb-1")

    assert stats.total == 1
    assert stats.total_messages == 1
