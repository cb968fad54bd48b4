"""Perpetual background sweeps.

Each sweep is one PeriodicTask: a single asyncio loop started with the
service and cancelled on shutdown. Nothing here is spawned per request.

Fallback: a sweep that raises logs a warning and runs again on the next
tick. It never takes the loop down.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

import structlog

from devrelay.config import settings
from devrelay.preview.registry import PreviewRegistry
from devrelay.sessions.manager import SessionManager

logger = structlog.get_logger().bind(component="tasks.sweeper")


class PeriodicTask:
    """Run ``func`` every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[int | None]]) -> None:
        self.name = name
        self.interval = interval
        self.func = func
        self.runs = 0
        self.failures = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"sweep:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_once(self) -> int | None:
        self.runs += 1
        try:
            affected = await self.func()
        except Exception as exc:
            self.failures += 1
            logger.warning("sweep_failed", sweep=self.name, error=str(exc))
            return None
        if affected:
            logger.info("sweep_complete", sweep=self.name, affected=affected)
        return affected

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()


class Sweeper:
    """Session eviction, preview idle cleanup and preview health probes."""

    def __init__(
        self,
        sessions: SessionManager,
        previews: PreviewRegistry,
        interval: float | None = None,
        health_interval: float | None = None,
        session_idle: float | None = None,
        preview_idle: float | None = None,
    ) -> None:
        interval = interval or settings.sweep_interval_seconds
        health_interval = health_interval or settings.preview_health_interval_seconds
        session_idle = settings.session_idle_timeout if session_idle is None else session_idle
        preview_idle = settings.preview_idle_timeout if preview_idle is None else preview_idle

        self.tasks = [
            PeriodicTask("session_eviction", interval, lambda: sessions.evict_idle(session_idle)),
            PeriodicTask("preview_cleanup", interval, lambda: previews.cleanup_inactive(preview_idle)),
            PeriodicTask("preview_health", health_interval, previews.health_sweep),
        ]

    def start(self) -> None:
        for task in self.tasks:
            task.start()
        logger.info("sweeper_started", sweeps=[t.name for t in self.tasks])

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()

    async def run_all_once(self) -> dict[str, int | None]:
        return {task.name: await task.run_once() for task in self.tasks}

    def status(self) -> list[dict]:
        return [
            {"name": t.name, "interval": t.interval, "running": t.running, "runs": t.runs, "failures": t.failures}
            for t in self.tasks
        ]
