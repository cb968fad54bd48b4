"""Compute worker — the server side of the heavy-execution wire contract.

Runs on the heavy machine. ``/execute-heavy`` runs a command to completion,
except that a command whose output announces a dev server is detached into
the supervisor and answered immediately with its URL. When the output names
a dev server without a port, its listening sockets are polled for a bounded
time before detaching. ``/dev-server/start`` starts a dev server explicitly
and waits, bounded, for it to come up.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from devrelay.compute.monitor import Monitor
from devrelay.compute.supervisor import DevServerSupervisor
from devrelay.config import DevRelaySettings, settings
from devrelay.detection.detector import OutputScanner
from devrelay.tools.compute_client import resolve_working_dir
from devrelay.tools.process import ManagedProcess
from devrelay.utils import preview
from devrelay.utils.clock import elapsed_ms, monotonic

logger = structlog.get_logger().bind(component="compute.server")

STARTUP_OUTPUT_CHARS = 4000


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HeavyCommandBody(_Body):
    command: str
    working_dir: str | None = Field(default=None, alias="workingDir")
    repository: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")


class DevServerBody(_Body):
    working_dir: str | None = Field(default=None, alias="workingDir")
    repository: str | None = None
    session_id: str | None = Field(default=None, alias="sessionId")
    port: int = 8080
    command: str | None = None


class StopBody(_Body):
    session_id: str | None = Field(default=None, alias="sessionId")
    repository: str | None = None


def supervisor_key(session_id: str | None, repository: str | None, working_dir: str = "") -> str:
    return session_id or repository or working_dir


def _failure(message: str, status_code: int = 400, **extra: Any) -> JSONResponse:
    return JSONResponse(
        {"success": False, "output": "", "error": message, "exitCode": 1, **extra},
        status_code=status_code,
    )


def create_compute_app(
    config: DevRelaySettings | None = None,
    supervisor: DevServerSupervisor | None = None,
    monitor: Monitor | None = None,
) -> FastAPI:
    cfg = config or settings
    servers = supervisor or DevServerSupervisor(
        public_host=cfg.compute_public_host,
        startup_seconds=cfg.dev_server_startup_seconds,
        max_output_chars=cfg.max_output_chars,
    )
    metrics = monitor or Monitor(cfg.compute_projects_root)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("compute_worker_started", projects_root=cfg.compute_projects_root)
        try:
            yield
        finally:
            stopped = await servers.stop_all()
            logger.info("compute_worker_stopped", dev_servers_stopped=stopped)

    app = FastAPI(title="devrelay-compute", lifespan=lifespan)
    app.state.supervisor = servers

    def _working_dir(working_dir: str | None, repository: str | None) -> str:
        resolved = resolve_working_dir(
            working_dir,
            repository,
            projects_root=cfg.compute_projects_root,
            default_dir=cfg.compute_default_dir,
        )
        os.makedirs(resolved, exist_ok=True)
        return resolved

    @app.post("/execute-heavy")
    async def execute_heavy(body: HeavyCommandBody) -> JSONResponse:
        if not body.command.strip():
            return _failure("Empty command")
        try:
            working_dir = _working_dir(body.working_dir, body.repository)
        except OSError as exc:
            return _failure(f"Cannot prepare working directory: {exc}")

        started = monotonic()
        scanner = OutputScanner(command=body.command)
        ready = asyncio.Event()
        listening: list[int] = []
        polls: list[asyncio.Task] = []

        async def watch_sockets() -> None:
            listening.extend(await servers.poll_listening_ports(process))
            # Announced but never bound: detach anyway once the ceiling passes
            if process.running:
                ready.set()

        def on_detection(_stream: str, _text: str) -> None:
            if scanner.resolved:
                ready.set()
            elif scanner.detection.detected and not polls:
                polls.append(asyncio.create_task(watch_sockets()))

        process = ManagedProcess(
            body.command,
            cwd=working_dir,
            on_output=scanner.sink,
            max_output_chars=cfg.max_output_chars,
        )
        process.add_sink(on_detection)
        try:
            await process.start()
        except OSError as exc:
            return _failure(f"Failed to start command: {exc}", status_code=500)

        logger.info(
            "heavy_command_started",
            session_id=body.session_id,
            pid=process.pid,
            working_dir=working_dir,
            command_preview=preview(body.command),
        )
        try:
            outcome = await process.wait(cfg.heavy_command_timeout, release=ready)
        finally:
            for poll in polls:
                poll.cancel()

        if outcome.detached:
            server = await servers.adopt(
                supervisor_key(body.session_id, body.repository, working_dir),
                process,
                scanner,
                working_dir,
                listening=listening,
            )
            return JSONResponse({
                "success": True,
                "output": outcome.stdout,
                "error": outcome.stderr,
                "exitCode": 0,
                "executionTime": elapsed_ms(started),
                "workingDir": working_dir,
                "url": server.url,
                "webUrl": server.url,
                "port": server.port,
                "serverType": scanner.server_type,
                "confirmed": server.confirmed,
                "detached": True,
            })

        error = outcome.stderr
        if outcome.timed_out:
            note = f"Command timeout ({cfg.heavy_command_timeout:g}s max)"
            error = f"{error}\n{note}" if error else note
        logger.info(
            "heavy_command_complete",
            session_id=body.session_id,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            duration_ms=outcome.duration_ms,
        )
        return JSONResponse({
            "success": outcome.exit_code == 0,
            "output": outcome.stdout,
            "error": error,
            "exitCode": outcome.exit_code,
            "executionTime": elapsed_ms(started),
            "workingDir": working_dir,
            "timedOut": outcome.timed_out,
        })

    @app.post("/dev-server/start")
    async def start_dev_server(body: DevServerBody) -> JSONResponse:
        try:
            working_dir = _working_dir(body.working_dir, body.repository)
        except OSError as exc:
            return _failure(f"Cannot prepare working directory: {exc}")
        command = body.command or cfg.dev_server_command.format(port=body.port)
        key = supervisor_key(body.session_id, body.repository, working_dir)

        try:
            server = await servers.start(key, command, working_dir, body.port)
        except OSError as exc:
            return _failure(f"Failed to start dev server: {exc}", status_code=500)

        output = (server.process.stdout + server.process.stderr)[-STARTUP_OUTPUT_CHARS:]
        if not server.alive:
            return JSONResponse({
                "success": False,
                "output": output,
                "error": "Dev server exited during startup",
                "exitCode": server.process.returncode or 1,
                "workingDir": working_dir,
            })
        return JSONResponse({
            "success": True,
            "url": server.url,
            "webUrl": server.url,
            "port": server.port,
            "confirmed": server.confirmed,
            "serverType": server.scanner.server_type,
            "pid": server.process.pid,
            "output": output,
            "workingDir": working_dir,
        })

    @app.get("/dev-server/status")
    async def dev_server_status(sessionId: str | None = None, repository: str | None = None) -> dict[str, Any]:
        key = sessionId or repository
        listed = await servers.status(key)
        return {"running": bool(listed), "servers": listed}

    @app.post("/dev-server/stop")
    async def stop_dev_server(body: StopBody) -> JSONResponse:
        key = supervisor_key(body.session_id, body.repository)
        if not key:
            return _failure("sessionId or repository is required")
        stopped = await servers.stop(key)
        return JSONResponse({"success": stopped, "key": key}, status_code=200 if stopped else 404)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "healthy", "devServers": len(servers)}

    @app.get("/system/info")
    async def system_info() -> dict[str, Any]:
        snapshot = await asyncio.to_thread(metrics.snapshot)
        return {**snapshot, "devServers": await servers.status()}

    return app
