"""Autonomous agent loop — plan, execute, observe, repeat.

Each iteration asks the text-generation collaborator for the next actions
given the task and the transcript so far, then runs them in the session's
sandbox. The run ends when the model reports completion, a critical action
fails, the iteration budget is spent, or the wall-clock budget runs out.
Every step is appended to the AgentRun and emitted to the activity log.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from devrelay.agents.planner import SYSTEM_PROMPT, build_context_prompt, parse_action_plan
from devrelay.config import settings
from devrelay.models.activity import ActivityLog
from devrelay.models.errors import DevRelayError
from devrelay.models.schemas import AgentAction, AgentRun, AgentStep, Session
from devrelay.sandbox.executor import SandboxExecutor
from devrelay.utils import preview
from devrelay.utils.clock import elapsed_ms, monotonic, now_utc

logger = structlog.get_logger().bind(component="agents.loop")

GENERATION_TEMPERATURE = 0.3
GENERATION_MAX_TOKENS = 1500
STEP_OUTPUT_CHARS = 2000


class TextGenerator(Protocol):
    async def chat_simple(
        self,
        prompt: str,
        system: str = "",
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> str: ...


class AutonomousAgent:
    """Bounded plan/execute/observe cycle over the sandboxed executor."""

    def __init__(
        self,
        generator: TextGenerator,
        sandbox: SandboxExecutor,
        activity: ActivityLog | None = None,
        max_iterations: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.generator = generator
        self.sandbox = sandbox
        self.activity = activity
        self.max_iterations = max_iterations or settings.agent_max_iterations
        self.timeout = timeout or settings.agent_timeout_seconds

    async def run(
        self,
        task: str,
        session: Session,
        max_iterations: int | None = None,
        timeout: float | None = None,
    ) -> AgentRun:
        max_iterations = max_iterations or self.max_iterations
        timeout = timeout or self.timeout
        run = AgentRun(task=task, session_id=session.session_id)
        started = monotonic()
        self._emit(run, "agent_start", task=task[:500], max_iterations=max_iterations, timeout_s=timeout)
        logger.info("agent_start", run_id=run.run_id, session_id=session.session_id, task_preview=preview(task))

        try:
            await self._loop(run, session, max_iterations, timeout, started)
        except asyncio.CancelledError:
            run.status = "error"
            run.error = "Agent run cancelled"
            raise
        finally:
            run.duration_ms = elapsed_ms(started)
            run.completed_at = now_utc()
            self._emit(
                run,
                "agent_complete",
                error=run.error,
                status=run.status,
                iterations=run.iterations,
                steps=len(run.steps),
            )
            logger.info(
                "agent_complete",
                run_id=run.run_id,
                status=run.status,
                iterations=run.iterations,
                steps=len(run.steps),
                duration_ms=run.duration_ms,
            )
        return run

    async def _loop(
        self,
        run: AgentRun,
        session: Session,
        max_iterations: int,
        timeout: float,
        started: float,
    ) -> None:
        for iteration in range(1, max_iterations + 1):
            remaining = timeout - (monotonic() - started)
            if remaining <= 0:
                run.status = "timeout"
                run.error = f"Agent timed out after {timeout:g}s"
                return
            run.iterations = iteration

            prompt = build_context_prompt(run.task, session.current_dir, run.steps)
            try:
                reply = await asyncio.wait_for(
                    self.generator.chat_simple(
                        prompt,
                        system=SYSTEM_PROMPT,
                        temperature=GENERATION_TEMPERATURE,
                        max_tokens=GENERATION_MAX_TOKENS,
                    ),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                run.status = "timeout"
                run.error = f"Agent timed out after {timeout:g}s waiting for the model"
                return
            except Exception as exc:
                # The generator is an external service; any failure ends the run
                logger.warning("agent_generation_failed", run_id=run.run_id, error=str(exc))
                run.status = "error"
                run.error = f"Text generation failed: {exc}"
                return

            plan = parse_action_plan(reply)
            if plan.completed:
                run.status = "completed"
                run.result = plan.result or plan.reasoning
                return

            for action in plan.actions:
                step = await self._perform(action, session, iteration)
                run.steps.append(step)
                self._emit(
                    run,
                    "agent_step",
                    error=step.error if not step.success else "",
                    **step.model_dump(mode="json", exclude={"timestamp", "error"}),
                )
                if action.critical and not step.success:
                    run.status = "failed"
                    run.error = f"Critical action failed: {step.command or step.action}"
                    return
                if monotonic() - started >= timeout:
                    break

            if monotonic() - started >= timeout:
                run.status = "timeout"
                run.error = f"Agent timed out after {timeout:g}s"
                return

        run.status = "max_iterations"

    async def _perform(self, action: AgentAction, session: Session, iteration: int) -> AgentStep:
        step = AgentStep(
            iteration=iteration,
            action=action.type,
            command=action.command,
            reasoning=action.reasoning,
            critical=action.critical,
        )
        if action.type == "command":
            if not action.command.strip():
                step.error = "Empty command"
                return step
            result = await self.sandbox.run(action.command, session)
            step.success = result.success
            step.exit_code = result.exit_code
            step.output = result.output[:STEP_OUTPUT_CHARS]
            step.error = result.error[:STEP_OUTPUT_CHARS]
        elif action.type == "create_file":
            step.command = action.path
            try:
                written = await self.sandbox.workspaces.write_file(
                    session.workspace_dir, action.path, action.content
                )
            except DevRelayError as exc:
                step.error = exc.message
            else:
                step.success = True
                step.output = f"Wrote {written['size']} bytes to {written['path']}"
        elif action.type == "analyze":
            step.success = True
            step.output = action.reasoning
        else:
            step.error = f"Unknown action type: {action.type}"
        return step

    def _emit(self, run: AgentRun, event_type: str, error: str = "", **payload) -> None:
        if self.activity:
            self.activity.record(run.run_id, event_type, "agents.loop", error=error, **payload)
