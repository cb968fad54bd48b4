"""Workspace Store — per-user filesystem roots, quota accounting, file I/O.

Every path handed to this module is resolved to an absolute path and must
keep the workspace root as a prefix. That check is the only thing standing
between one user's session and another user's files, so it is done on every
call, including reads.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from devrelay.config import settings
from devrelay.models.errors import AccessDenied, InvalidRequest
from devrelay.models.schemas import QuotaUsage

logger = structlog.get_logger().bind(component="workspace.store")

MAX_USER_ID_LENGTH = 32
USER_HASH_LENGTH = 12
WORKSPACE_MODE = 0o700
WELCOME_FILE = "README.md"

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_user_id(raw: str) -> str:
    """Strip to ``[A-Za-z0-9_-]`` and cap the length."""
    cleaned = _UNSAFE_ID_CHARS.sub("", raw or "")[:MAX_USER_ID_LENGTH]
    if not cleaned:
        raise InvalidRequest("User id is empty after sanitization", raw=raw[:64] if raw else "")
    return cleaned


def user_hash(sanitized_id: str) -> str:
    return hashlib.sha256(sanitized_id.encode("utf-8")).hexdigest()[:USER_HASH_LENGTH]


def is_within(path: Path, root: Path) -> bool:
    """True when ``path`` (already resolved) is ``root`` or below it."""
    return path == root or root in path.parents


def directory_size(root: Path) -> int:
    """Recursive byte count of regular files under ``root`` (symlinks not followed)."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root, followlinks=False):
        for name in filenames:
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


class WorkspaceStore:
    """Allocates workspaces and performs path-validated file operations."""

    def __init__(self, root: Path | None = None, quota_bytes: int | None = None) -> None:
        self.root = Path(root or settings.workspace_root).expanduser().resolve()
        self.quota_bytes = quota_bytes if quota_bytes is not None else settings.storage_quota_bytes

    # ---- Allocation ----

    def workspace_for(self, sanitized_id: str) -> Path:
        return self.root / "users" / user_hash(sanitized_id)

    def ensure_workspace(self, sanitized_id: str) -> Path:
        """Create (or reuse) the user's workspace with owner-only permissions."""
        workspace = self.workspace_for(sanitized_id)
        created = not workspace.exists()
        workspace.mkdir(parents=True, exist_ok=True, mode=WORKSPACE_MODE)
        os.chmod(workspace, WORKSPACE_MODE)

        welcome = workspace / WELCOME_FILE
        if not welcome.exists():
            welcome.write_text(self._welcome_text(sanitized_id), encoding="utf-8")

        if created:
            logger.info("workspace_created", user_id=sanitized_id, path=str(workspace))
        return workspace.resolve()

    def _welcome_text(self, user_id: str) -> str:
        quota_mb = self.quota_bytes // (1024 * 1024)
        return (
            f"# Welcome {user_id}\n\n"
            "This is your private, secure workspace. Files here are only visible\n"
            "to your sessions.\n\n"
            f"- Max storage: {quota_mb}MB\n"
            "- Check usage with: /quota\n\n"
            "Try: ls -la, python3 --version, node --version\n"
        )

    # ---- Path validation ----

    def resolve(self, workspace: Path, relative: str | os.PathLike[str], base: Path | None = None) -> Path:
        """Resolve ``relative`` against ``base`` (default: workspace root).

        Raises AccessDenied when the result leaves the workspace.
        """
        root = workspace.resolve()
        start = (base or root).resolve()
        candidate = Path(relative)
        target = (candidate if candidate.is_absolute() else start / candidate).resolve()
        if not is_within(target, root):
            logger.warning("workspace_escape_blocked", workspace=str(root), requested=str(relative))
            raise AccessDenied("Access denied: Cannot leave your workspace", path=str(relative))
        return target

    # ---- Quota ----

    async def usage(self, workspace: Path) -> QuotaUsage:
        used = await asyncio.to_thread(directory_size, workspace)
        return QuotaUsage(used_bytes=used, limit_bytes=self.quota_bytes)

    # ---- File operations ----

    async def list_files(self, workspace: Path, path: str = ".") -> list[dict[str, Any]]:
        target = self.resolve(workspace, path)
        if not target.is_dir():
            raise InvalidRequest(f"Not a directory: {path}")

        def _scan() -> list[dict[str, Any]]:
            entries = []
            for item in sorted(target.iterdir(), key=lambda p: p.name):
                st = item.lstat()
                entries.append({
                    "name": item.name,
                    "path": str(item.relative_to(workspace.resolve())),
                    "type": "directory" if item.is_dir() else "file",
                    "size": st.st_size,
                    "modified": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat(),
                })
            return entries

        return await asyncio.to_thread(_scan)

    async def read_file(self, workspace: Path, path: str) -> str:
        target = self.resolve(workspace, path)
        if not target.is_file():
            raise InvalidRequest(f"File not found: {path}")
        return await asyncio.to_thread(target.read_text, "utf-8", "replace")

    async def write_file(self, workspace: Path, path: str, content: str) -> dict[str, Any]:
        target = self.resolve(workspace, path)
        if target == workspace.resolve() or target.is_dir():
            raise InvalidRequest(f"Cannot write to a directory: {path}")

        data = content.encode("utf-8")
        usage = await self.usage(workspace)
        existing = target.stat().st_size if target.is_file() else 0
        if usage.used_bytes - existing + len(data) > self.quota_bytes:
            raise InvalidRequest(
                "Storage quota exceeded",
                used=usage.used_bytes,
                limit=self.quota_bytes,
                requested=len(data),
            )

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("file_written", path=str(target), bytes=len(data))
        return {"path": str(target.relative_to(workspace.resolve())), "size": len(data)}
