"""Tests for SandboxExecutor — real ``bash -c`` processes inside a temp workspace."""

from __future__ import annotations

import time

import pytest

from devrelay.models.errors import ErrorKind


# ── Happy path ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_pwd_reports_workspace(sandbox, session):
    result = await sandbox.run("pwd", session)
    assert result.success
    assert result.exit_code == 0
    assert result.output.strip() == str(session.workspace_dir)
    assert result.executor == "sandbox"


@pytest.mark.asyncio
async def test_environment_is_jailed(sandbox, session, monkeypatch):
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "leak")
    result = await sandbox.run("env", session)
    assert "AWS_SECRET_ACCESS_KEY" not in result.output
    assert f"HOME={session.workspace_dir}" in result.output
    assert "DEVRELAY_JAIL=1" in result.output
    assert f"DEVRELAY_SESSION={session.session_id}" in result.output


@pytest.mark.asyncio
async def test_stderr_and_exit_code(sandbox, session):
    result = await sandbox.run("echo oops >&2; exit 3", session)
    assert not result.success
    assert result.exit_code == 3
    assert "oops" in result.error


@pytest.mark.asyncio
async def test_output_is_streamed_to_sink(sandbox, session):
    chunks: list[tuple[str, str]] = []
    result = await sandbox.run("echo one; echo two >&2", session, on_output=lambda s, t: chunks.append((s, t)))
    assert result.success
    streams = {s for s, _ in chunks}
    assert streams == {"stdout", "stderr"}
    assert "one" in "".join(t for s, t in chunks if s == "stdout")


# ── Blocklist ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_blocked_command_never_spawns(sandbox, session):
    marker = session.workspace_dir / "ran"
    result = await sandbox.run(f"touch {marker}; sudo ls", session)
    assert not result.success
    assert result.exit_code is None
    assert result.error_kind == ErrorKind.COMMAND_BLOCKED
    assert result.output.startswith("Command blocked for security:")
    assert not marker.exists()


# ── cd ────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cd_into_subdirectory_persists(sandbox, session):
    (session.workspace_dir / "app").mkdir()
    result = await sandbox.run("cd app", session)
    assert result.success
    assert session.current_dir == session.workspace_dir / "app"

    pwd = await sandbox.run("pwd", session)
    assert pwd.output.strip() == str(session.workspace_dir / "app")


@pytest.mark.asyncio
async def test_cd_home_forms_return_to_root(sandbox, session):
    (session.workspace_dir / "app" / "src").mkdir(parents=True)
    await sandbox.run("cd app/src", session)
    await sandbox.run("cd", session)
    assert session.current_dir == session.workspace_dir

    await sandbox.run("cd app/src", session)
    await sandbox.run("cd ~/app", session)
    assert session.current_dir == session.workspace_dir / "app"

    await sandbox.run("cd ~", session)
    assert session.current_dir == session.workspace_dir


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["/", "/etc", "/tmp"])
async def test_cd_outside_workspace_is_denied(sandbox, session, target):
    before = session.current_dir
    result = await sandbox.run(f"cd {target}", session)
    assert not result.success
    assert result.error_kind == ErrorKind.ACCESS_DENIED
    assert "Cannot leave your workspace" in result.error
    assert session.current_dir == before


@pytest.mark.asyncio
async def test_cd_parent_of_root_is_blocked_or_denied(sandbox, session):
    before = session.current_dir
    result = await sandbox.run("cd ..", session)
    assert not result.success
    assert session.current_dir == before


@pytest.mark.asyncio
async def test_cd_missing_directory(sandbox, session):
    result = await sandbox.run("cd nowhere", session)
    assert result.exit_code == 1
    assert result.error == "Directory not found: nowhere"


# ── Quota & edge cases ────────────────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("verb", ["/quota", "quota"])
async def test_quota_verb(sandbox, session, verb):
    result = await sandbox.run(verb, session)
    assert result.success
    assert "Storage used:" in result.output
    assert "Remaining:" in result.output


@pytest.mark.asyncio
async def test_empty_command(sandbox, session):
    result = await sandbox.run("   ", session)
    assert not result.success
    assert result.error_kind == ErrorKind.INVALID_REQUEST


@pytest.mark.asyncio
async def test_removed_current_dir_falls_back_to_root(sandbox, session):
    sub = session.workspace_dir / "tmpdir"
    sub.mkdir()
    await sandbox.run("cd tmpdir", session)
    sub.rmdir()
    result = await sandbox.run("pwd", session)
    assert result.output.strip() == str(session.workspace_dir)


# ── Timeout ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_timeout_kills_process_tree(sandbox, make_session):
    session = make_session("slowpoke", process_timeout=0.5)
    started = time.monotonic()
    result = await sandbox.run("sleep 30 & sleep 30; echo never", session)
    elapsed = time.monotonic() - started

    assert elapsed < 5
    assert not result.success
    assert result.timed_out
    assert result.exit_code == 124
    assert result.error == "Command timeout (0.5s max)"
    assert result.error_kind == ErrorKind.EXECUTION_TIMEOUT
    assert "never" not in result.output


@pytest.mark.asyncio
async def test_output_is_truncated(workspaces, make_session):
    from devrelay.sandbox.executor import SandboxExecutor

    small = SandboxExecutor(workspaces, max_output_chars=100)
    session = make_session()
    result = await small.run("head -c 5000 /dev/zero | tr '\\0' 'a'", session)
    assert result.output == "a" * 100 + "\n... [truncated]"
