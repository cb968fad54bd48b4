"""Core schemas — Session, ExecutionRequest, ExecutionResult, PreviewBinding, agent runs."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, PrivateAttr, computed_field

from devrelay.models.errors import DevRelayError, ErrorKind, SessionBusy
from devrelay.utils.clock import monotonic


class Session(BaseModel):
    """Server-side record binding a user to an isolated workspace.

    ``last_activity`` is a monotonic reading; ``created_at`` is wall clock and
    only used for display.
    """

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str = Field(description="Sanitized user id")
    user_hash: str = Field(description="Stable one-way hash of the user id")
    workspace_dir: Path = Field(description="Workspace root; every path must stay under it")
    current_dir: Path = Field(description="Current working directory inside the workspace")
    quota_bytes: int = Field(default=500 * 1024 * 1024, description="Storage ceiling")
    process_timeout: float = Field(default=120.0, description="Per-command budget on the light path")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: float = Field(default_factory=monotonic)

    _in_flight: bool = PrivateAttr(default=False)
    _current_command: str = PrivateAttr(default="")

    def touch(self) -> None:
        self.last_activity = monotonic()

    def idle_seconds(self) -> float:
        return monotonic() - self.last_activity

    @property
    def busy(self) -> bool:
        return self._in_flight

    @contextmanager
    def claim(self, command: str = "") -> Iterator[Session]:
        """Mark the session as running a command for the duration of the block.

        Raises SessionBusy if another command already holds it. The check and
        the set happen without an await in between, so this is atomic on the
        event loop.
        """
        if self._in_flight:
            raise SessionBusy(
                "A command is already running in this session",
                running=self._current_command[:120],
            )
        self._in_flight = True
        self._current_command = command
        try:
            yield self
        finally:
            self._in_flight = False
            self._current_command = ""
            self.touch()

    def describe(self, quota_remaining: int | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "workspaceDir": str(self.workspace_dir),
            "currentDir": str(self.current_dir),
            "createdAt": self.created_at.isoformat(),
        }
        if quota_remaining is not None:
            body["quotaRemaining"] = quota_remaining
        return body


class ExecutionRequest(BaseModel):
    """One command submitted for a session."""

    command: str
    repository: str | None = Field(default=None, description="Project/repository context")
    working_dir: str | None = Field(default=None, description="Explicit working directory (heavy path)")
    force_heavy: bool = Field(default=False, description="Routing override: always use the heavy path")


class ExecutionResult(BaseModel):
    """Outcome of a command on any path.

    ``success`` is computed from ``exit_code``; a result without an exit code
    (blocked, rejected, unreachable) is never successful.
    """

    output: str = ""
    error: str = ""
    exit_code: int | None = None
    executor: str = Field(
        default="sandbox",
        description="sandbox | heavy | heavy-fallback-sandbox | validation",
    )
    routing: str = Field(default="smart", description="smart | forced | fallback | capacity | error")
    duration_ms: float = 0.0
    timed_out: bool = False
    error_kind: ErrorKind | None = None
    working_dir: str = ""
    url: str | None = None
    port: int | None = None
    server_type: str | None = None
    preview_url: str | None = None
    heavy_error: str | None = None
    heavy_error_kind: ErrorKind | None = None
    correlation_id: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def from_error(cls, exc: DevRelayError, **fields: Any) -> ExecutionResult:
        return cls(error=exc.message, error_kind=exc.kind, **fields)

    def to_response(self) -> dict[str, Any]:
        """External (camelCase) shape returned to API clients."""
        body: dict[str, Any] = {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "exitCode": self.exit_code,
            "executor": self.executor,
            "routing": self.routing,
            "executionTime": self.duration_ms,
            "timedOut": self.timed_out,
        }
        if self.working_dir:
            body["workingDir"] = self.working_dir
        if self.error_kind is not None:
            body["errorKind"] = self.error_kind.value
        if self.url or self.port:
            # Both names are populated; clients read either.
            body["url"] = self.url
            body["webUrl"] = self.url
            body["port"] = self.port
        if self.server_type:
            body["serverType"] = self.server_type
        if self.preview_url:
            body["previewUrl"] = self.preview_url
        if self.heavy_error is not None:
            body["heavyError"] = self.heavy_error
            if self.heavy_error_kind is not None:
                body["heavyErrorKind"] = self.heavy_error_kind.value
        if self.correlation_id:
            body["correlationId"] = self.correlation_id
        return body


class QuotaUsage(BaseModel):
    used_bytes: int
    limit_bytes: int

    @property
    def remaining_bytes(self) -> int:
        return max(self.limit_bytes - self.used_bytes, 0)

    @property
    def percentage(self) -> float:
        if self.limit_bytes <= 0:
            return 100.0
        return round(self.used_bytes / self.limit_bytes * 100, 2)

    def describe(self) -> str:
        mib = 1024 * 1024
        return (
            f"Storage used: {self.used_bytes / mib:.2f} MB / {self.limit_bytes / mib:.0f} MB "
            f"({self.percentage:.1f}%)\n"
            f"Remaining: {self.remaining_bytes / mib:.2f} MB"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used_bytes,
            "limit": self.limit_bytes,
            "remaining": self.remaining_bytes,
            "percentage": self.percentage,
        }


class PreviewBinding(BaseModel):
    """Session → dev-server target used by the preview proxy."""

    session_id: str
    target_host: str
    target_port: int
    server_type: str = "unknown"
    status: Literal["active", "error"] = "active"
    registered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_accessed: float = Field(default_factory=monotonic)
    last_error: str | None = None

    @property
    def target(self) -> str:
        return f"http://{self.target_host}:{self.target_port}"

    def touch(self) -> None:
        self.last_accessed = monotonic()

    def idle_seconds(self) -> float:
        return monotonic() - self.last_accessed

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "target": self.target,
            "type": self.server_type,
            "status": self.status,
            "registeredAt": self.registered_at.isoformat(),
            "idleSeconds": round(self.idle_seconds(), 1),
            "lastError": self.last_error,
        }


# ── Agent loop ────────────────────────────────────────────────────────────────


class AgentAction(BaseModel):
    type: str = "command"
    command: str = ""
    path: str = ""
    content: str = ""
    reasoning: str = ""
    critical: bool = False


class ActionPlan(BaseModel):
    completed: bool = False
    result: str = ""
    reasoning: str = ""
    actions: list[AgentAction] = Field(default_factory=list)
    parsed_from: str = Field(default="json", description="json | text")


class AgentStep(BaseModel):
    iteration: int
    action: str
    command: str = ""
    reasoning: str = ""
    success: bool = False
    exit_code: int | None = None
    output: str = ""
    error: str = ""
    critical: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AgentRun(BaseModel):
    """Full record of one autonomous run; kept for inspection after it ends."""

    run_id: str = Field(default_factory=lambda: f"agent_{uuid.uuid4().hex[:12]}")
    task: str
    session_id: str
    status: str = Field(
        default="running",
        description="running | completed | failed | max_iterations | timeout | error",
    )
    steps: list[AgentStep] = Field(default_factory=list)
    result: str = ""
    error: str = ""
    iterations: int = 0
    duration_ms: float = 0.0
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
