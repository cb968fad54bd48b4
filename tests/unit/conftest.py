"""Unit-test conftest — MockInference, FakeCompute, shared fixtures.

All fixtures here are available to every test under tests/unit/ without import.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from devrelay.models.activity import ActivityLog
from devrelay.models.schemas import ExecutionResult, Session
from devrelay.sandbox.executor import SandboxExecutor
from devrelay.sessions.manager import SessionManager
from devrelay.workspace.store import WorkspaceStore, sanitize_user_id, user_hash


# ─────────────────────────────────────────────────────────────────────────────
# MockInference — drop-in replacement for InferenceClient
# ─────────────────────────────────────────────────────────────────────────────

class MockInference:
    """Scripted fake InferenceClient for agent tests.

    Args:
        replies:    Strings returned by successive chat_simple calls. Once
                    exhausted, every further call reports completion.
        chat_delay: Seconds to sleep before each reply.
        raises:     If set, chat_simple raises this.
    """

    def __init__(
        self,
        replies: list[str] | None = None,
        *,
        chat_delay: float = 0.0,
        raises: Exception | None = None,
    ) -> None:
        self.replies = list(replies or [])
        self.chat_delay = chat_delay
        self.raises = raises
        self.prompts: list[str] = []
        self.chat_simple_calls: int = 0
        self.closed = False

    async def chat_simple(self, prompt: str = "", system: str = "", **kwargs) -> str:
        self.chat_simple_calls += 1
        self.prompts.append(prompt)
        if self.raises:
            raise self.raises
        if self.chat_delay > 0:
            await asyncio.sleep(self.chat_delay)
        if self.replies:
            return self.replies.pop(0)
        return json.dumps({"completed": True, "result": "done"})

    async def close(self) -> None:
        self.closed = True


# ─────────────────────────────────────────────────────────────────────────────
# FakeCompute — stands in for ComputeBackendClient in router/service tests
# ─────────────────────────────────────────────────────────────────────────────

class FakeCompute:
    """Records calls; returns ``result`` or raises ``raises``."""

    def __init__(
        self,
        result: ExecutionResult | None = None,
        *,
        raises: Exception | None = None,
        host: str = "compute.internal",
    ) -> None:
        self.result = result
        self.raises = raises
        self.host = host
        self.base_url = f"http://{host}:8080"
        self.remote_calls: list[dict] = []
        self.dev_server_calls: list[dict] = []
        self.capacity = SimpleNamespace(warm=True)

    async def run_remote(self, command, session_id, working_dir=None, repository=None) -> ExecutionResult:
        self.remote_calls.append({
            "command": command,
            "session_id": session_id,
            "working_dir": working_dir,
            "repository": repository,
        })
        return self._answer()

    async def start_dev_server(self, session_id, repository=None, working_dir=None, port=0, command=None):
        self.dev_server_calls.append({
            "session_id": session_id,
            "repository": repository,
            "working_dir": working_dir,
            "port": port,
            "command": command,
        })
        return self._answer()

    def _answer(self) -> ExecutionResult:
        if self.raises:
            raise self.raises
        assert self.result is not None
        return self.result.model_copy()

    async def health(self) -> dict:
        return {"status": "healthy"}

    async def close(self) -> None:
        pass


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def build_session(workspaces: WorkspaceStore, user_id: str = "alice", process_timeout: float = 10.0) -> Session:
    sanitized = sanitize_user_id(user_id)
    workspace = workspaces.ensure_workspace(sanitized)
    return Session(
        user_id=sanitized,
        user_hash=user_hash(sanitized),
        workspace_dir=workspace,
        current_dir=workspace,
        quota_bytes=workspaces.quota_bytes,
        process_timeout=process_timeout,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def activity():
    """A fresh in-memory ActivityLog for each test."""
    return ActivityLog(persist=False)


@pytest.fixture
def workspaces(tmp_path: Path) -> WorkspaceStore:
    """Workspace store rooted in a temp dir with a 1 MB quota."""
    return WorkspaceStore(tmp_path / "workspaces", quota_bytes=1024 * 1024)


@pytest.fixture
def make_session(workspaces):
    """Factory: make_session(user_id="alice", process_timeout=10.0) -> Session."""
    def _make(user_id: str = "alice", process_timeout: float = 10.0) -> Session:
        return build_session(workspaces, user_id, process_timeout)
    return _make


@pytest.fixture
def session(make_session) -> Session:
    return make_session()


@pytest.fixture
def sessions(workspaces, activity) -> SessionManager:
    return SessionManager(workspaces, activity, process_timeout=10.0)


@pytest.fixture
def sandbox(workspaces) -> SandboxExecutor:
    return SandboxExecutor(workspaces)


@pytest.fixture
def mock_inference():
    return MockInference()


@pytest.fixture
def make_inference():
    """The MockInference class, for tests that script replies."""
    return MockInference


@pytest.fixture
def make_compute():
    """The FakeCompute class, for tests that need a stand-in heavy executor."""
    return FakeCompute
