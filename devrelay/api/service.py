"""DevRelayService — owns every component and is the inbound request boundary.

Components are built once here and injected into each other; nothing below
this layer reaches for a module-level table. ``execute()`` never raises:
typed errors become result values and anything unexpected becomes an
``internal_error`` result carrying a correlation id that is also logged.
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from typing import Any

import structlog

from devrelay.agents.loop import AutonomousAgent, TextGenerator
from devrelay.config import DevRelaySettings, settings
from devrelay.models.activity import ActivityLog
from devrelay.models.errors import DevRelayError, ErrorKind, SessionBusy
from devrelay.models.schemas import AgentRun, ExecutionRequest, ExecutionResult, Session
from devrelay.preview.registry import PreviewRegistry
from devrelay.routing.router import CommandRouter
from devrelay.sandbox.executor import SandboxExecutor
from devrelay.sessions.manager import SessionManager
from devrelay.tasks import Sweeper
from devrelay.tools.capacity import CapacityController, HealthProbeCapacity, HttpCapacityProvider
from devrelay.tools.compute_client import ComputeBackendClient
from devrelay.tools.inference import InferenceClient
from devrelay.tools.process import OutputSink
from devrelay.workspace.store import WorkspaceStore

logger = structlog.get_logger().bind(component="api.service")

MAX_RETAINED_RUNS = 100


def new_correlation_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


def build_compute_client(cfg: DevRelaySettings) -> ComputeBackendClient | None:
    if not cfg.heavy_backend_url:
        return None
    provider = (
        HttpCapacityProvider(cfg.capacity_api_url)
        if cfg.capacity_api_url
        else HealthProbeCapacity(cfg.heavy_backend_url)
    )
    capacity = CapacityController(
        provider,
        wait_seconds=cfg.capacity_wait_seconds,
        poll_initial=cfg.capacity_poll_initial,
        poll_max=cfg.capacity_poll_max,
    )
    return ComputeBackendClient(cfg.heavy_backend_url, timeout=cfg.heavy_command_timeout, capacity=capacity)


class DevRelayService:
    """Composition root for the command backend."""

    def __init__(
        self,
        config: DevRelaySettings | None = None,
        *,
        workspaces: WorkspaceStore | None = None,
        compute: ComputeBackendClient | None = None,
        registry: PreviewRegistry | None = None,
        generator: TextGenerator | None = None,
        activity: ActivityLog | None = None,
    ) -> None:
        cfg = config or settings
        self.settings = cfg
        self.activity = activity or ActivityLog(cfg.activity_dir)
        self.workspaces = workspaces or WorkspaceStore(cfg.workspace_root, cfg.storage_quota_bytes)
        self.sessions = SessionManager(self.workspaces, self.activity, cfg.light_command_timeout)
        self.sandbox = SandboxExecutor(self.workspaces, max_output_chars=cfg.max_output_chars)
        self.compute = compute if compute is not None else build_compute_client(cfg)
        self.registry = registry or PreviewRegistry(
            public_base_url=cfg.public_base_url,
            proxy_timeout=cfg.proxy_timeout_seconds,
            health_timeout=cfg.preview_health_timeout,
            activity=self.activity,
        )
        self.router = CommandRouter(
            self.sandbox,
            self.compute,
            self.registry,
            activity=self.activity,
            preview_target_host=cfg.preview_target_host,
        )
        self.generator = generator or InferenceClient(cfg.inference_url, cfg.inference_model, cfg.inference_api_key)
        self.agent = AutonomousAgent(
            self.generator,
            self.sandbox,
            self.activity,
            max_iterations=cfg.agent_max_iterations,
            timeout=cfg.agent_timeout_seconds,
        )
        self.sweeper = Sweeper(
            self.sessions,
            self.registry,
            interval=cfg.sweep_interval_seconds,
            health_interval=cfg.preview_health_interval_seconds,
            session_idle=cfg.session_idle_timeout,
            preview_idle=cfg.preview_idle_timeout,
        )
        self._runs: OrderedDict[str, AgentRun] = OrderedDict()

    # ---- Lifecycle ----

    async def start(self) -> None:
        self.sweeper.start()
        logger.info(
            "service_started",
            heavy_backend=self.compute.base_url if self.compute else None,
            workspace_root=str(self.workspaces.root),
        )

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.registry.close()
        if self.compute:
            await self.compute.close()
        close = getattr(self.generator, "close", None)
        if close is not None:
            await close()
        logger.info("service_stopped")

    # ---- Sessions ----

    async def create_session(self, user_id: str) -> dict[str, Any]:
        session = await self.sessions.create_session(user_id)
        usage = await self.workspaces.usage(session.workspace_dir)
        return {"success": True, "session": session.describe(quota_remaining=usage.remaining_bytes)}

    async def close_session(self, session_id: str) -> dict[str, Any]:
        """End a session and drop its preview binding. The workspace is kept."""
        session = await self.sessions.get_session(session_id)
        if session.busy:
            raise SessionBusy("Session is running a command", session_id=session_id)
        await self.sessions.remove(session_id)
        preview_removed = await self.registry.remove(session_id)
        return {"success": True, "sessionId": session_id, "previewRemoved": preview_removed}

    async def session(self, session_id: str) -> Session:
        return await self.sessions.get_session(session_id)

    # ---- Commands ----

    async def execute(
        self,
        session_id: str,
        command: str,
        repository: str | None = None,
        working_dir: str | None = None,
        force_heavy: bool = False,
        on_output: OutputSink | None = None,
    ) -> ExecutionResult:
        """Inbound command operation. Always returns a result."""
        try:
            session = await self.sessions.get_session(session_id)
            request = ExecutionRequest(
                command=command or "",
                repository=repository or None,
                working_dir=working_dir or None,
                force_heavy=force_heavy,
            )
            return await self.router.dispatch(request, session, on_output)
        except DevRelayError as exc:
            return ExecutionResult.from_error(exc, executor="validation", routing="error")
        except Exception:
            correlation_id = new_correlation_id()
            logger.exception("execute_failed", session_id=session_id, correlation_id=correlation_id)
            return ExecutionResult(
                error=f"Internal error (correlation id {correlation_id})",
                error_kind=ErrorKind.INTERNAL_ERROR,
                executor="validation",
                routing="error",
                correlation_id=correlation_id,
            )

    # ---- Agent ----

    async def run_agent(
        self,
        session_id: str,
        task: str,
        max_iterations: int | None = None,
        timeout: float | None = None,
    ) -> AgentRun:
        session = await self.sessions.get_session(session_id)
        with session.claim(f"agent: {task[:80]}"):
            run = await self.agent.run(task, session, max_iterations=max_iterations, timeout=timeout)
        self._runs[run.run_id] = run
        while len(self._runs) > MAX_RETAINED_RUNS:
            self._runs.popitem(last=False)
        return run

    def agent_run(self, run_id: str) -> AgentRun | None:
        return self._runs.get(run_id)

    # ---- Files ----

    async def list_files(self, session_id: str, path: str = ".") -> list[dict[str, Any]]:
        session = await self.sessions.get_session(session_id)
        return await self.workspaces.list_files(session.workspace_dir, path)

    async def read_file(self, session_id: str, path: str) -> str:
        session = await self.sessions.get_session(session_id)
        return await self.workspaces.read_file(session.workspace_dir, path)

    async def write_file(self, session_id: str, path: str, content: str) -> dict[str, Any]:
        session = await self.sessions.get_session(session_id)
        return await self.workspaces.write_file(session.workspace_dir, path, content)

    # ---- Health ----

    async def health(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "status": "healthy",
            "sessions": await self.sessions.stats(),
            "previews": await self.registry.stats(),
            "sweeps": self.sweeper.status(),
            "heavyBackend": None,
        }
        if self.compute:
            backend = await self.compute.health()
            body["heavyBackend"] = {
                "url": self.compute.base_url,
                "warm": self.compute.capacity.warm,
                **backend,
            }
        return body
