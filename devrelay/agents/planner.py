"""Agent planner — context prompts in, structured action plans out.

The model is asked for JSON. Replies often arrive wrapped in markdown fences
or as prose, so parsing tries a ```json fence, then any fence, then the raw
text, and finally scrapes command-looking lines out of free text.
"""

from __future__ import annotations

import json
import re
from pathlib import Path

import structlog
from pydantic import ValidationError

from devrelay.models.schemas import ActionPlan, AgentAction, AgentStep

logger = structlog.get_logger().bind(component="agents.planner")

MAX_EXTRACTED_COMMANDS = 3

SYSTEM_PROMPT = """\
You are an autonomous developer assistant operating a Linux shell inside a
user's project workspace. Work towards the task one small step at a time,
using the results of earlier steps. Only use commands that are safe to run
in a shared sandbox."""

RESPONSE_FORMAT = """\
Respond with JSON only, in one of these two shapes:

While work remains:
{"completed": false, "reasoning": "why these actions", "actions": [
  {"type": "command", "command": "ls -la", "reasoning": "inspect files", "critical": false},
  {"type": "create_file", "path": "app/main.py", "content": "...", "critical": true},
  {"type": "analyze", "reasoning": "what to look at next"}
]}

When the task is done:
{"completed": true, "result": "summary of what was done"}"""

_JSON_FENCE = re.compile(r"```json\s*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[\w-]*\s*\n?(.*?)```", re.DOTALL)

# Free-text command scraping, in priority order per line
_LINE_COMMANDS = (
    re.compile(r"`([^`\n]+)`"),
    re.compile(r"^\s*\$\s+(.+)$"),
    re.compile(r"^\s*(?:Run|Execute):\s*(.+)$", re.IGNORECASE),
)


def build_context_prompt(task: str, working_dir: Path | str, steps: list[AgentStep]) -> str:
    lines = [f"Task: {task}", f"Working directory: {working_dir}", ""]
    if steps:
        lines.append("Previous steps:")
        for i, step in enumerate(steps, start=1):
            outcome = "SUCCESS" if step.success else "FAILED"
            target = step.command or step.reasoning[:80]
            lines.append(f"{i}. {step.action}: {target} -> {outcome}")
            detail = (step.output or step.error).strip()
            if detail:
                lines.append(f"   output: {detail[:300]}")
        lines.append("")
    else:
        lines.append("No steps taken yet.")
        lines.append("")
    lines.append(RESPONSE_FORMAT)
    return "\n".join(lines)


def _candidates(raw: str) -> list[str]:
    found = []
    match = _JSON_FENCE.search(raw)
    if match:
        found.append(match.group(1))
    match = _ANY_FENCE.search(raw)
    if match:
        found.append(match.group(1))
    found.append(raw)
    # Prose around a bare object: take the outermost braces
    start, end = raw.find("{"), raw.rfind("}")
    if 0 <= start < end:
        found.append(raw[start:end + 1])
    return found


def extract_commands(text: str, limit: int = MAX_EXTRACTED_COMMANDS) -> list[str]:
    commands: list[str] = []
    for line in text.splitlines():
        for pattern in _LINE_COMMANDS:
            match = pattern.search(line)
            if match:
                command = match.group(1).strip()
                if command and command not in commands:
                    commands.append(command)
                break
        if len(commands) >= limit:
            break
    return commands


def parse_action_plan(raw: str) -> ActionPlan:
    """Parse a model reply into an ActionPlan, never raising."""
    for candidate in _candidates(raw or ""):
        try:
            data = json.loads(candidate.strip())
        except ValueError:
            continue
        if not isinstance(data, dict):
            continue
        try:
            return ActionPlan.model_validate(data | {"parsed_from": "json"})
        except ValidationError as exc:
            logger.debug("plan_schema_mismatch", error=str(exc)[:200])
            continue

    commands = extract_commands(raw or "")
    logger.info("plan_parsed_from_text", commands=len(commands))
    return ActionPlan(
        completed=False,
        reasoning="Commands extracted from a free-text reply",
        actions=[AgentAction(type="command", command=c) for c in commands],
        parsed_from="text",
    )
