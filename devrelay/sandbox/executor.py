"""Sandboxed Executor — light-path commands jailed to a session workspace.

Isolation model:
  - BlockedPatternSet is checked before anything else; a match never spawns
  - ``cd`` and ``/quota`` are answered in-process
  - Everything else runs as ``bash -c`` with cwd = session.current_dir, an
    allow-listed environment and HOME pointed at the workspace
  - Hard wall-clock timeout = session.process_timeout; the process tree is
    SIGKILLed on expiry and the result carries exit code 124
"""

from __future__ import annotations

import os
from pathlib import Path

import structlog

from devrelay.config import settings
from devrelay.models.errors import AccessDenied, CommandBlocked, ExecutionTimeout, InvalidRequest
from devrelay.models.schemas import ExecutionResult, Session
from devrelay.sandbox.guard import BlockedPatternSet
from devrelay.tools.process import OutputSink, run_process
from devrelay.utils import preview
from devrelay.utils.clock import elapsed_ms, monotonic
from devrelay.workspace.store import WorkspaceStore

logger = structlog.get_logger().bind(component="sandbox.executor")

# Host variables a jailed command may see; everything else is dropped
ENV_ALLOW_LIST = ("PATH", "LANG", "LC_ALL", "TERM", "TZ")
_DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"

QUOTA_VERBS = frozenset(["/quota", "quota"])


class SandboxExecutor:
    """Runs a single command for a session under blocklist and timeout."""

    def __init__(
        self,
        workspaces: WorkspaceStore,
        guard: BlockedPatternSet | None = None,
        max_output_chars: int | None = None,
    ) -> None:
        self.workspaces = workspaces
        self.guard = guard or BlockedPatternSet()
        self.max_output_chars = max_output_chars or settings.max_output_chars

    async def run(
        self,
        command: str,
        session: Session,
        on_output: OutputSink | None = None,
    ) -> ExecutionResult:
        """Execute ``command`` in ``session``'s workspace. Never raises for user errors."""
        started = monotonic()
        command = command.strip()

        verdict = self.guard.check(command)
        if not verdict.allowed:
            exc = CommandBlocked(f"Command blocked for security: {verdict.reason}", pattern=verdict.pattern)
            return ExecutionResult.from_error(
                exc,
                output=exc.message,
                working_dir=str(session.current_dir),
                duration_ms=elapsed_ms(started),
            )

        if command == "cd" or command.startswith("cd ") or command.startswith("cd\t"):
            return self._change_directory(command[2:].strip(), session, started)

        if command in QUOTA_VERBS:
            usage = await self.workspaces.usage(session.workspace_dir)
            return ExecutionResult(
                output=usage.describe(),
                exit_code=0,
                working_dir=str(session.current_dir),
                duration_ms=elapsed_ms(started),
            )

        if not command:
            exc = InvalidRequest("Empty command")
            return ExecutionResult.from_error(exc, duration_ms=elapsed_ms(started))

        return await self._spawn(command, session, on_output, started)

    def _change_directory(self, arg: str, session: Session, started: float) -> ExecutionResult:
        root = session.workspace_dir.resolve()
        if arg in ("", "~"):
            target = root
        else:
            base = session.current_dir
            if arg.startswith("~/"):
                arg, base = arg[2:], root
            # Absolute paths are taken literally; the containment check rejects host paths
            try:
                target = self.workspaces.resolve(root, arg, base=base)
            except AccessDenied as exc:
                return ExecutionResult.from_error(
                    exc,
                    output=exc.message,
                    exit_code=1,
                    working_dir=str(session.current_dir),
                    duration_ms=elapsed_ms(started),
                )
            if not target.is_dir():
                return ExecutionResult(
                    error=f"Directory not found: {arg}",
                    output=f"Directory not found: {arg}",
                    exit_code=1,
                    working_dir=str(session.current_dir),
                    duration_ms=elapsed_ms(started),
                )

        session.current_dir = target
        session.touch()
        logger.debug("directory_changed", session_id=session.session_id, cwd=str(target))
        return ExecutionResult(
            output=str(target),
            exit_code=0,
            working_dir=str(target),
            duration_ms=elapsed_ms(started),
        )

    def build_env(self, session: Session) -> dict[str, str]:
        env = {key: os.environ[key] for key in ENV_ALLOW_LIST if key in os.environ}
        env.setdefault("PATH", _DEFAULT_PATH)
        env.update({
            "HOME": str(session.workspace_dir),
            "PWD": str(session.current_dir),
            "DEVRELAY_SESSION": session.session_id,
            "DEVRELAY_USER": session.user_id,
            "DEVRELAY_JAIL": "1",
        })
        return env

    async def _spawn(
        self,
        command: str,
        session: Session,
        on_output: OutputSink | None,
        started: float,
    ) -> ExecutionResult:
        cwd = Path(session.current_dir)
        if not cwd.is_dir():
            # Directory was removed underneath the session; fall back to the root
            cwd = session.workspace_dir
            session.current_dir = cwd

        outcome = await run_process(
            command,
            cwd=cwd,
            env=self.build_env(session),
            timeout=session.process_timeout,
            on_output=on_output,
            max_output_chars=self.max_output_chars,
        )
        session.touch()

        if outcome.timed_out:
            result = ExecutionResult.from_error(
                ExecutionTimeout(f"Command timeout ({session.process_timeout:g}s max)"),
                output=outcome.stdout,
                exit_code=outcome.exit_code,
                timed_out=True,
                working_dir=str(cwd),
                duration_ms=elapsed_ms(started),
            )
        else:
            result = ExecutionResult(
                output=outcome.stdout,
                error=outcome.stderr,
                exit_code=outcome.exit_code,
                working_dir=str(cwd),
                duration_ms=elapsed_ms(started),
            )

        logger.info(
            "sandbox_command_complete",
            session_id=session.session_id,
            command_preview=preview(command),
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_ms=result.duration_ms,
            stdout_len=len(outcome.stdout),
        )
        return result
