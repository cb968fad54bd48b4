"""Command Router — validate, classify, execute, fall back, publish previews.

dispatch() order:
  1. normalize the command text
  2. project-context precondition (before any remote call)
  3. claim the session (one in-flight command per session)
  4. classify light/heavy
  5. heavy → ComputeBackendClient; any remote failure except capacity
     re-runs once on the sandbox, tagged as a fallback
  6. heavy success with a discovered server → preview binding
"""

from __future__ import annotations

from urllib.parse import urlsplit

import structlog

from devrelay.config import settings
from devrelay.detection.detector import LOOPBACK_HOSTS, DevServerDetector, classify_server_type
from devrelay.models.activity import ActivityLog
from devrelay.models.errors import (
    CapacityUnavailable,
    DevRelayError,
    HeavyExecutionError,
    InvalidRequest,
    RepositoryRequired,
)
from devrelay.models.schemas import ExecutionRequest, ExecutionResult, Session
from devrelay.preview.registry import PreviewRegistry
from devrelay.routing.policy import HEAVY, classify, dev_server_intent, normalize_command, required_project
from devrelay.sandbox.executor import SandboxExecutor
from devrelay.tools.compute_client import ComputeBackendClient
from devrelay.tools.process import OutputSink
from devrelay.utils import preview
from devrelay.utils.clock import elapsed_ms, monotonic

logger = structlog.get_logger().bind(component="routing.router")


class CommandRouter:
    """Chooses and drives the executor for each command."""

    def __init__(
        self,
        sandbox: SandboxExecutor,
        compute: ComputeBackendClient | None = None,
        registry: PreviewRegistry | None = None,
        detector: DevServerDetector | None = None,
        activity: ActivityLog | None = None,
        preview_target_host: str | None = None,
    ) -> None:
        self.sandbox = sandbox
        self.compute = compute
        self.registry = registry
        self.detector = detector or DevServerDetector()
        self.activity = activity
        self.preview_target_host = (
            settings.preview_target_host if preview_target_host is None else preview_target_host
        )

    async def dispatch(
        self,
        request: ExecutionRequest,
        session: Session,
        on_output: OutputSink | None = None,
    ) -> ExecutionResult:
        started = monotonic()
        command = normalize_command(request.command)
        if not command:
            return ExecutionResult.from_error(InvalidRequest("Command is required"), executor="validation", routing="error")

        requirement = required_project(command)
        if requirement is not None and not request.repository:
            exc = RepositoryRequired(
                requirement.message(command),
                projectType=requirement.project_type,
                expectedFiles=list(requirement.markers),
            )
            logger.info("repository_required", session_id=session.session_id, command_preview=preview(command))
            return ExecutionResult.from_error(exc, output=exc.message, executor="validation", routing="error")

        try:
            with session.claim(command):
                result = await self._execute(command, request, session, on_output)
        except DevRelayError as exc:
            # SessionBusy from claim(), or a typed error escaping an executor
            return ExecutionResult.from_error(exc, executor="validation", routing="error")

        result.duration_ms = elapsed_ms(started)
        return result

    async def _execute(
        self,
        command: str,
        request: ExecutionRequest,
        session: Session,
        on_output: OutputSink | None,
    ) -> ExecutionResult:
        decision = classify(command, force_heavy=request.force_heavy)
        use_heavy = decision.route == HEAVY and self.compute is not None
        routing = "forced" if decision.reason == "forced" else "smart"

        logger.info(
            "command_dispatched",
            session_id=session.session_id,
            route="heavy" if use_heavy else "light",
            reason=decision.reason,
            matched=decision.matched,
            command_preview=preview(command),
        )
        self._record(session, "dispatch", route="heavy" if use_heavy else "light", reason=decision.reason, command=command[:200])

        if not use_heavy:
            result = await self.sandbox.run(command, session, on_output)
            result.routing = routing
            return result

        try:
            result = await self._run_heavy(command, request, session)
        except CapacityUnavailable as exc:
            logger.warning("heavy_capacity_unavailable", session_id=session.session_id, error=exc.message)
            self._record(session, "capacity_unavailable", error=exc.message)
            return ExecutionResult.from_error(exc, executor="heavy", routing="capacity")
        except HeavyExecutionError as exc:
            return await self._fallback(command, session, on_output, exc)

        result.routing = routing
        if on_output and result.output:
            on_output("stdout", result.output)
        if result.success:
            await self._publish_preview(command, session, result)
        return result

    async def _run_heavy(self, command: str, request: ExecutionRequest, session: Session) -> ExecutionResult:
        assert self.compute is not None
        intent_port = dev_server_intent(command)
        if intent_port is not None:
            # Conversational phrasings use the backend's default dev-server command
            explicit = command if "web-server" in command else None
            return await self.compute.start_dev_server(
                session.session_id,
                repository=request.repository,
                working_dir=request.working_dir,
                port=intent_port,
                command=explicit,
            )
        return await self.compute.run_remote(
            command,
            session.session_id,
            working_dir=request.working_dir,
            repository=request.repository,
        )

    async def _fallback(
        self,
        command: str,
        session: Session,
        on_output: OutputSink | None,
        heavy_exc: HeavyExecutionError,
    ) -> ExecutionResult:
        logger.warning(
            "heavy_fallback",
            session_id=session.session_id,
            error_kind=heavy_exc.kind.value,
            error=heavy_exc.message,
            command_preview=preview(command),
        )
        result = await self.sandbox.run(command, session, on_output)
        result.executor = "heavy-fallback-sandbox"
        result.routing = "fallback"
        result.heavy_error = heavy_exc.message
        result.heavy_error_kind = heavy_exc.kind
        self._record(
            session,
            "fallback",
            error=heavy_exc.message,
            heavy_error_kind=heavy_exc.kind.value,
            fallback_exit_code=result.exit_code,
        )
        return result

    async def _publish_preview(self, command: str, session: Session, result: ExecutionResult) -> None:
        if self.registry is None:
            return

        port = result.port
        host = None
        if result.url:
            parts = urlsplit(result.url)
            host = parts.hostname
            port = port or parts.port
        if port is None:
            detection = self.detector.scan(result.output)
            if not detection.detected or detection.port is None:
                return
            port = detection.port
            if detection.url:
                result.url = detection.url
                host = urlsplit(detection.url).hostname
        result.port = port

        if self.preview_target_host:
            target_host = self.preview_target_host
        elif host and host not in LOOPBACK_HOSTS:
            target_host = host
        else:
            target_host = self.compute.host if self.compute else "localhost"

        result.server_type = result.server_type or classify_server_type(result.output, command)
        await self.registry.register(session.session_id, target_host, port, result.server_type)
        result.preview_url = self.registry.preview_url(session.session_id)

    def _record(self, session: Session, event_type: str, error: str = "", **payload) -> None:
        if self.activity:
            self.activity.record(session.session_id, event_type, "routing.router", error=error, **payload)
