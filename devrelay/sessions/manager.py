"""Session Manager — session identity, workspace binding, idle eviction.

The session table is a plain dict guarded by one asyncio.Lock. Contention is
low (create/evict are rare compared to lookups) so a single coarse lock is
enough; lookups take it too so an eviction sweep can never hand out a session
it is in the middle of removing.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from devrelay.config import settings
from devrelay.models.activity import ActivityLog
from devrelay.models.errors import SessionNotFound
from devrelay.models.schemas import Session
from devrelay.workspace.store import WorkspaceStore, sanitize_user_id, user_hash

logger = structlog.get_logger().bind(component="sessions.manager")


class SessionManager:
    """Owns every live Session; at most one per user id."""

    def __init__(
        self,
        workspaces: WorkspaceStore,
        activity: ActivityLog | None = None,
        process_timeout: float | None = None,
    ) -> None:
        self.workspaces = workspaces
        self.activity = activity
        self.process_timeout = process_timeout or settings.light_command_timeout
        self._sessions: dict[str, Session] = {}
        self._by_user: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, user_id: str) -> Session:
        """Create a fresh session for ``user_id``, replacing any live one.

        The workspace directory is reused across sessions of the same user.
        """
        sanitized = sanitize_user_id(user_id)
        workspace = await asyncio.to_thread(self.workspaces.ensure_workspace, sanitized)
        session = Session(
            user_id=sanitized,
            user_hash=user_hash(sanitized),
            workspace_dir=workspace,
            current_dir=workspace,
            quota_bytes=self.workspaces.quota_bytes,
            process_timeout=self.process_timeout,
        )

        async with self._lock:
            previous_id = self._by_user.get(sanitized)
            if previous_id is not None:
                self._sessions.pop(previous_id, None)
                logger.info("session_replaced", user_id=sanitized, previous_session_id=previous_id)
            self._sessions[session.session_id] = session
            self._by_user[sanitized] = session.session_id

        logger.info("session_created", session_id=session.session_id, user_id=sanitized)
        if self.activity:
            self.activity.record(
                session.session_id,
                "session_created",
                "sessions.manager",
                user_id=sanitized,
                workspace=str(workspace),
                replaced=previous_id,
            )
        return session

    async def get_session(self, session_id: str) -> Session:
        """Return the live session and refresh its activity timestamp."""
        async with self._lock:
            session = self._sessions.get(session_id or "")
        if session is None:
            raise SessionNotFound("Session not found or expired", session_id=session_id)
        session.touch()
        return session

    async def evict_idle(self, max_age: float | None = None) -> int:
        """Remove sessions idle longer than ``max_age`` seconds. Busy sessions are kept."""
        max_age = settings.session_idle_timeout if max_age is None else max_age
        evicted: list[Session] = []
        async with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.busy or session.idle_seconds() <= max_age:
                    continue
                del self._sessions[session_id]
                if self._by_user.get(session.user_id) == session_id:
                    del self._by_user[session.user_id]
                evicted.append(session)

        for session in evicted:
            logger.info(
                "session_evicted",
                session_id=session.session_id,
                user_id=session.user_id,
                idle_s=round(session.idle_seconds(), 1),
            )
            if self.activity:
                self.activity.record(session.session_id, "session_evicted", "sessions.manager")
        return len(evicted)

    async def remove(self, session_id: str) -> bool:
        """Forget ``session_id``. Its workspace directory stays on disk."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session and self._by_user.get(session.user_id) == session_id:
                del self._by_user[session.user_id]
        if session is None:
            return False
        logger.info("session_closed", session_id=session_id, user_id=session.user_id)
        if self.activity:
            self.activity.record(session_id, "session_closed", "sessions.manager")
        return True

    async def stats(self) -> dict[str, Any]:
        async with self._lock:
            sessions = list(self._sessions.values())
        return {
            "total": len(sessions),
            "busy": sum(1 for s in sessions if s.busy),
            "users": len({s.user_id for s in sessions}),
        }

    def __len__(self) -> int:
        return len(self._sessions)
