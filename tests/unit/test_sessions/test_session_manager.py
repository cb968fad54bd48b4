"""Tests for SessionManager and Session.claim()."""

from __future__ import annotations

import pytest

from devrelay.models.errors import InvalidRequest, SessionBusy, SessionNotFound


@pytest.mark.asyncio
async def test_create_and_get(sessions):
    session = await sessions.create_session("alice")
    assert session.user_id == "alice"
    assert session.current_dir == session.workspace_dir
    assert session.workspace_dir.is_dir()
    assert await sessions.get_session(session.session_id) is session


@pytest.mark.asyncio
async def test_same_user_gets_same_workspace_new_session(sessions):
    first = await sessions.create_session("alice")
    second = await sessions.create_session("alice")
    assert first.session_id != second.session_id
    assert first.workspace_dir == second.workspace_dir


@pytest.mark.asyncio
async def test_new_session_replaces_previous_for_user(sessions):
    first = await sessions.create_session("alice")
    await sessions.create_session("alice")
    with pytest.raises(SessionNotFound):
        await sessions.get_session(first.session_id)
    assert len(sessions) == 1


@pytest.mark.asyncio
async def test_users_get_distinct_workspaces(sessions):
    alice = await sessions.create_session("alice")
    bob = await sessions.create_session("bob")
    assert alice.workspace_dir != bob.workspace_dir


@pytest.mark.asyncio
async def test_unknown_session(sessions):
    with pytest.raises(SessionNotFound):
        await sessions.get_session("does-not-exist")
    with pytest.raises(SessionNotFound):
        await sessions.get_session("")


@pytest.mark.asyncio
async def test_invalid_user_id(sessions):
    with pytest.raises(InvalidRequest):
        await sessions.create_session("!!!")


@pytest.mark.asyncio
async def test_creation_is_audited(sessions, activity):
    session = await sessions.create_session("alice")
    events = activity.events_of("session_created")
    assert events[0].correlation_id == session.session_id


# ── Idle eviction ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_evict_idle_removes_stale_sessions(sessions, activity):
    stale = await sessions.create_session("alice")
    fresh = await sessions.create_session("bob")
    stale.last_activity -= 3600

    evicted = await sessions.evict_idle(max_age=1800)

    assert evicted == 1
    with pytest.raises(SessionNotFound):
        await sessions.get_session(stale.session_id)
    assert await sessions.get_session(fresh.session_id) is fresh
    assert activity.events_of("session_evicted")


@pytest.mark.asyncio
async def test_evict_idle_keeps_busy_sessions(sessions):
    session = await sessions.create_session("alice")
    session.last_activity -= 3600
    with session.claim("long build"):
        session.last_activity -= 3600
        assert await sessions.evict_idle(max_age=1800) == 0
    assert await sessions.get_session(session.session_id) is session


@pytest.mark.asyncio
async def test_remove_forgets_session_but_keeps_workspace(sessions, activity):
    session = await sessions.create_session("alice")
    (session.workspace_dir / "notes.txt").write_text("kept")

    assert await sessions.remove(session.session_id)
    assert not await sessions.remove(session.session_id)

    with pytest.raises(SessionNotFound):
        await sessions.get_session(session.session_id)
    assert (session.workspace_dir / "notes.txt").read_text() == "kept"
    assert activity.events_of("session_closed")[0].correlation_id == session.session_id
    assert (await sessions.stats())["users"] == 0


@pytest.mark.asyncio
async def test_stats(sessions):
    await sessions.create_session("alice")
    await sessions.create_session("bob")
    stats = await sessions.stats()
    assert stats == {"total": 2, "busy": 0, "users": 2}


# ── claim() ───────────────────────────────────────────────────────────────────


def test_claim_rejects_second_command(session):
    with session.claim("npm install"):
        assert session.busy
        with pytest.raises(SessionBusy) as exc_info:
            with session.claim("ls"):
                pass
        assert exc_info.value.details["running"] == "npm install"
    assert not session.busy


def test_claim_released_on_error(session):
    with pytest.raises(RuntimeError):
        with session.claim("ls"):
            raise RuntimeError("boom")
    assert not session.busy
