"""Blocked command patterns — checked before any process is spawned.

Regex deny-list over the raw command text. Order matters only for which
reason gets reported when several patterns match.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

logger = structlog.get_logger().bind(component="sandbox.guard")


@dataclass(frozen=True)
class GuardVerdict:
    allowed: bool
    reason: str = ""
    pattern: str = ""


# (pattern, human-readable reason)
DEFAULT_BLOCKED_PATTERNS: tuple[tuple[str, str], ...] = (
    # Destructive filesystem / disk operations
    (r"\brm\s+-[a-z]*r[a-z]*f[a-z]*\s+/(?:\s|$|\*)", "recursive delete of the filesystem root"),
    (r"\brm\s+-[a-z]*f[a-z]*r[a-z]*\s+/(?:\s|$|\*)", "recursive delete of the filesystem root"),
    (r"\bdd\s+if=", "raw disk copy"),
    (r"\bmkfs(?:\.\w+)?\b", "filesystem formatting"),
    (r"(?:^|[;&|]\s*)mount\b", "mounting filesystems"),
    (r"\bumount\b", "unmounting filesystems"),
    # Privilege escalation / credentials
    (r"\bpasswd\b", "changing passwords"),
    (r"(?:^|[;&|]\s*)su(?:\s|$)", "switching users"),
    (r"\bsudo\b", "privilege escalation"),
    (r"\bcurl\b.*?/etc/shadow", "reading credential files"),
    (r"\bcat\b.*?/etc/(?:passwd|shadow)", "reading credential files"),
    # Signalling other processes / host power state
    (r"\bkill\s+-9\b", "force-killing processes"),
    (r"\bkill\s+-(?:KILL|SIGKILL)\b", "force-killing processes"),
    (r"\bshutdown\b", "shutting down the host"),
    (r"\breboot\b", "rebooting the host"),
    (r"\b(?:halt|poweroff)\b", "powering off the host"),
    # Directory traversal
    (r"\.\./", "directory traversal"),
)


class BlockedPatternSet:
    """Ordered deny-list of command patterns.

    Evaluated before any process spawn; a match short-circuits execution.
    """

    def __init__(self, patterns: tuple[tuple[str, str], ...] | None = None) -> None:
        source = patterns if patterns is not None else DEFAULT_BLOCKED_PATTERNS
        self._patterns = [(re.compile(p, re.IGNORECASE), p, reason) for p, reason in source]

    def check(self, command: str) -> GuardVerdict:
        for compiled, raw, reason in self._patterns:
            if compiled.search(command):
                logger.warning("command_blocked", pattern=raw, reason=reason, command_preview=command[:100])
                return GuardVerdict(allowed=False, reason=reason, pattern=raw)
        return GuardVerdict(allowed=True)

    def __len__(self) -> int:
        return len(self._patterns)
