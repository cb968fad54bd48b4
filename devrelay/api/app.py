"""Inbound HTTP API.

Thin FastAPI layer over DevRelayService. Handlers translate request bodies
and headers into service calls and results into JSON; nothing here holds
state of its own. The preview routes accept every method plus WebSocket
upgrades and hand off to the PreviewRegistry.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Header, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from devrelay.api.service import DevRelayService, new_correlation_id
from devrelay.models.errors import DevRelayError, ErrorKind, InvalidRequest
from devrelay.models.schemas import ExecutionResult
from devrelay.preview.registry import ProxyRequest
from devrelay.preview.websocket import bridge_websocket

logger = structlog.get_logger().bind(component="api.app")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

_STATUS_BY_KIND = {
    ErrorKind.SESSION_NOT_FOUND: 404,
    ErrorKind.REPOSITORY_REQUIRED: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.SESSION_BUSY: 409,
    ErrorKind.INTERNAL_ERROR: 500,
}
_SAFE_CORRELATION_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


# ── Request bodies ────────────────────────────────────────────────────────────


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreateSessionBody(_Body):
    user_id: str | None = Field(default=None, alias="userId")


class SessionBody(_Body):
    session_id: str | None = Field(default=None, alias="sessionId")


class ExecuteBody(_Body):
    session_id: str | None = Field(default=None, alias="sessionId")
    command: str = ""
    repository: str | None = None
    working_dir: str | None = Field(default=None, alias="workingDir")
    force_heavy: bool = Field(default=False, alias="forceHeavy")
    stream: bool = False


class AgentBody(_Body):
    session_id: str | None = Field(default=None, alias="sessionId")
    task: str = ""
    max_iterations: int | None = Field(default=None, alias="maxIterations")
    timeout: float | None = None


class FileBody(_Body):
    session_id: str | None = Field(default=None, alias="sessionId")
    path: str = "."
    content: str = ""


def status_for(result: ExecutionResult) -> int:
    if result.error_kind is None:
        return 200
    return _STATUS_BY_KIND.get(result.error_kind, 200)


def _require(value: str | None, header: str | None, name: str) -> str:
    resolved = value or header
    if not resolved:
        raise InvalidRequest(f"{name} is required")
    return resolved


def _error_response(exc: DevRelayError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.http_status)


def create_app(service: DevRelayService | None = None) -> FastAPI:
    """Build the API around ``service`` (a fresh one by default)."""
    svc = service or DevRelayService()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await svc.start()
        try:
            yield
        finally:
            await svc.close()

    app = FastAPI(title="devrelay", lifespan=lifespan)
    app.state.service = svc
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        structlog.contextvars.clear_contextvars()
        session_id = request.headers.get("x-session-id")
        if session_id:
            structlog.contextvars.bind_contextvars(session_id=session_id)
        return await call_next(request)

    @app.exception_handler(DevRelayError)
    async def devrelay_error_handler(request: Request, exc: DevRelayError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = new_correlation_id()
        logger.error(
            "request_failed",
            path=request.url.path,
            correlation_id=correlation_id,
            exc_info=exc,
        )
        return JSONResponse(
            {
                "success": False,
                "error": "Internal server error",
                "errorKind": ErrorKind.INTERNAL_ERROR.value,
                "correlationId": correlation_id,
            },
            status_code=500,
        )

    # ── Sessions & commands ──────────────────────────────────────────────────

    @app.post("/session/create")
    async def create_session(
        body: CreateSessionBody,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        user_id = _require(body.user_id, x_user_id, "userId")
        return await svc.create_session(user_id)

    @app.post("/session/close")
    async def close_session(
        body: SessionBody,
        x_session_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        return await svc.close_session(_require(body.session_id, x_session_id, "sessionId"))

    @app.post("/command/execute")
    async def execute(body: ExecuteBody, x_session_id: str | None = Header(default=None)):
        session_id = body.session_id or x_session_id or ""
        structlog.contextvars.bind_contextvars(session_id=session_id)
        if body.stream:
            return StreamingResponse(_stream_execution(svc, session_id, body), media_type="application/x-ndjson")
        result = await svc.execute(
            session_id,
            body.command,
            repository=body.repository,
            working_dir=body.working_dir,
            force_heavy=body.force_heavy,
        )
        return JSONResponse(result.to_response(), status_code=status_for(result))

    # ── Agent ────────────────────────────────────────────────────────────────

    @app.post("/ai/agent")
    async def run_agent(body: AgentBody, x_session_id: str | None = Header(default=None)) -> dict[str, Any]:
        session_id = _require(body.session_id, x_session_id, "sessionId")
        if not body.task.strip():
            raise InvalidRequest("task is required")
        run = await svc.run_agent(session_id, body.task, body.max_iterations, body.timeout)
        return {"success": run.status == "completed", "run": run.model_dump(mode="json")}

    @app.get("/ai/agent/{run_id}")
    async def get_agent_run(run_id: str) -> JSONResponse:
        run = svc.agent_run(run_id)
        if run is None:
            return JSONResponse({"success": False, "error": "Agent run not found", "runId": run_id}, status_code=404)
        return JSONResponse({"success": True, "run": run.model_dump(mode="json")})

    # ── Files ────────────────────────────────────────────────────────────────

    @app.post("/files/list")
    async def list_files(body: FileBody, x_session_id: str | None = Header(default=None)) -> dict[str, Any]:
        session_id = _require(body.session_id, x_session_id, "sessionId")
        return {"success": True, "files": await svc.list_files(session_id, body.path)}

    @app.post("/files/read")
    async def read_file(body: FileBody, x_session_id: str | None = Header(default=None)) -> dict[str, Any]:
        session_id = _require(body.session_id, x_session_id, "sessionId")
        return {"success": True, "path": body.path, "content": await svc.read_file(session_id, body.path)}

    @app.post("/files/write")
    async def write_file(body: FileBody, x_session_id: str | None = Header(default=None)) -> dict[str, Any]:
        session_id = _require(body.session_id, x_session_id, "sessionId")
        written = await svc.write_file(session_id, body.path, body.content)
        return {"success": True, **written}

    # ── Preview management ───────────────────────────────────────────────────

    @app.get("/previews")
    async def list_previews() -> dict[str, Any]:
        return {
            "previews": await svc.registry.list_bindings(),
            "stats": await svc.registry.stats(),
        }

    @app.get("/previews/{session_id}")
    async def get_preview(session_id: str) -> JSONResponse:
        binding = await svc.registry.get(session_id)
        if binding is None:
            return JSONResponse(
                {"error": "Session not found", "sessionId": session_id},
                status_code=404,
            )
        return JSONResponse(binding.to_dict() | {"previewUrl": svc.registry.preview_url(session_id)})

    @app.post("/previews/{session_id}/health")
    async def check_preview(session_id: str) -> JSONResponse:
        report = await svc.registry.health_check(session_id)
        return JSONResponse(report, status_code=404 if report["status"] == "not_found" else 200)

    @app.delete("/previews/{session_id}")
    async def delete_preview(session_id: str) -> dict[str, Any]:
        return {"success": await svc.registry.remove(session_id), "sessionId": session_id}

    # ── Preview proxy ────────────────────────────────────────────────────────

    @app.api_route("/preview/{session_id}", methods=PROXY_METHODS)
    @app.api_route("/preview/{session_id}/{sub_path:path}", methods=PROXY_METHODS)
    async def proxy_preview(session_id: str, request: Request, sub_path: str = "") -> Response:
        proxied = ProxyRequest(
            method=request.method,
            query=request.url.query,
            headers=list(request.headers.items()),
            body=await request.body(),
            scheme=request.url.scheme,
            host=request.headers.get("host", ""),
        )
        upstream = await svc.registry.route_request(session_id, sub_path, proxied)
        return Response(content=upstream.body, status_code=upstream.status_code, headers=upstream.headers)

    @app.websocket("/preview/{session_id}")
    @app.websocket("/preview/{session_id}/{sub_path:path}")
    async def proxy_preview_ws(websocket: WebSocket, session_id: str, sub_path: str = "") -> None:
        await bridge_websocket(websocket, svc.registry, session_id, sub_path)

    # ── Health & audit ───────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return await svc.health()

    @app.get("/activity/{correlation_id}")
    async def activity(correlation_id: str) -> JSONResponse:
        if not _SAFE_CORRELATION_ID.match(correlation_id):
            raise InvalidRequest("Malformed correlation id")
        trace = svc.activity.get_trace(correlation_id)
        status = 200 if trace.events else 404
        return JSONResponse(trace.model_dump(mode="json"), status_code=status)

    return app


async def _stream_execution(svc: DevRelayService, session_id: str, body: ExecuteBody) -> AsyncIterator[str]:
    """NDJSON: one ``output`` line per chunk, then a final ``result`` line."""
    queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()

    def relay(stream: str, chunk: str) -> None:
        queue.put_nowait((stream, chunk))

    async def _run() -> ExecutionResult:
        try:
            return await svc.execute(
                session_id,
                body.command,
                repository=body.repository,
                working_dir=body.working_dir,
                force_heavy=body.force_heavy,
                on_output=relay,
            )
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(_run())
    try:
        while (item := await queue.get()) is not None:
            stream, chunk = item
            yield json.dumps({"type": "output", "stream": stream, "data": chunk}) + "\n"
        result = await task
    finally:
        if not task.done():
            task.cancel()
    yield json.dumps({"type": "result", **result.to_response()}) + "\n"
