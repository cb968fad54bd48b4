"""Async client for the heavy compute backend.

Request/response wire contract:
  POST /execute-heavy     {command, workingDir, repository, sessionId}
                          → {success, output, error, exitCode, executionTime, url?, port?}
  POST /dev-server/start  {workingDir, repository, port, sessionId, command?}
                          → {success, url, port, confirmed, serverType?, output?}

Every failure surfaces as a HeavyExecutionError subclass so the Router can
decide on fallback without inspecting httpx internals.
"""

from __future__ import annotations

import re
from typing import Any

import httpx
import structlog

from devrelay.config import settings
from devrelay.models.errors import (
    RemoteProtocolError,
    RemoteTimeout,
    RemoteUnreachable,
)
from devrelay.models.schemas import ExecutionResult
from devrelay.tools.capacity import CapacityController, HealthProbeCapacity, HttpCapacityProvider
from devrelay.utils import preview
from devrelay.utils.clock import elapsed_ms, monotonic

logger = structlog.get_logger().bind(component="tools.compute_client")

_UNSAFE_REPO_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def repository_dir(repository: str, projects_root: str | None = None) -> str:
    root = (projects_root or settings.compute_projects_root).rstrip("/")
    return f"{root}/{_UNSAFE_REPO_CHARS.sub('_', repository)}"


def resolve_working_dir(
    working_dir: str | None,
    repository: str | None,
    projects_root: str | None = None,
    default_dir: str | None = None,
) -> str:
    """Explicit dir, else the repository checkout, else the default dir."""
    if working_dir:
        return working_dir
    if repository:
        return repository_dir(repository, projects_root)
    return default_dir or settings.compute_default_dir


def _combine(output: str, error: str) -> str:
    if output and error:
        return f"{output}\n{error}"
    return output or error


class ComputeBackendClient:
    """Heavy Executor: runs commands on the remote compute backend."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        capacity: CapacityController | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.heavy_backend_url).rstrip("/")
        if not self.base_url:
            raise ValueError("heavy backend URL is not configured")
        self.timeout = timeout or settings.heavy_command_timeout
        self._transport = transport
        if capacity is None:
            provider = (
                HttpCapacityProvider(settings.capacity_api_url)
                if settings.capacity_api_url
                else HealthProbeCapacity(self.base_url, transport=transport)
            )
            capacity = CapacityController(provider)
        self.capacity = capacity
        self._client: httpx.AsyncClient | None = None

    @property
    def host(self) -> str:
        return httpx.URL(self.base_url).host

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(connect=10.0, read=self.timeout, write=30.0, pool=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and the capacity provider."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
        await self.capacity.close()

    # ---- Commands ----

    async def run_remote(
        self,
        command: str,
        session_id: str,
        working_dir: str | None = None,
        repository: str | None = None,
    ) -> ExecutionResult:
        """Run ``command`` remotely. Raises HeavyExecutionError on any failure."""
        started = monotonic()
        await self.capacity.ensure()

        resolved_dir = resolve_working_dir(working_dir, repository)
        payload = {
            "command": command,
            "workingDir": resolved_dir,
            "repository": repository,
            "sessionId": session_id,
        }
        data = await self._post("/execute-heavy", payload, self.timeout)

        exit_code = data.get("exitCode")
        if isinstance(exit_code, bool) or not isinstance(exit_code, int):
            raise RemoteProtocolError("Heavy backend response has no integer exitCode", body=str(data)[:200])

        output = str(data.get("output") or "")
        error = str(data.get("error") or "")
        url = data.get("url") or data.get("webUrl")
        result = ExecutionResult(
            output=_combine(output, error),
            error=error,
            exit_code=exit_code,
            executor="heavy",
            duration_ms=elapsed_ms(started),
            working_dir=str(data.get("workingDir") or resolved_dir),
            url=url,
            port=_as_port(data.get("port")),
            server_type=data.get("serverType"),
        )
        logger.info(
            "heavy_command_complete",
            session_id=session_id,
            command_preview=preview(command),
            exit_code=exit_code,
            remote_ms=data.get("executionTime"),
            duration_ms=result.duration_ms,
            url=url,
        )
        return result

    async def start_dev_server(
        self,
        session_id: str,
        repository: str | None = None,
        working_dir: str | None = None,
        port: int = 0,
        command: str | None = None,
    ) -> ExecutionResult:
        """Ask the backend to start a long-running dev server and report its URL."""
        started = monotonic()
        await self.capacity.ensure()

        resolved_dir = resolve_working_dir(working_dir, repository)
        payload: dict[str, Any] = {
            "workingDir": resolved_dir,
            "repository": repository,
            "sessionId": session_id,
            "port": port or 8080,
        }
        if command:
            payload["command"] = command
        # The backend waits for readiness itself; allow for its ceiling plus slack
        data = await self._post("/dev-server/start", payload, settings.dev_server_startup_seconds + 60.0)

        if not isinstance(data.get("success"), bool):
            raise RemoteProtocolError("Dev-server response has no success flag", body=str(data)[:200])

        success = data["success"]
        url = data.get("url") or data.get("webUrl")
        output = str(data.get("output") or "")
        if success and url:
            note = "" if data.get("confirmed", True) else " (startup not confirmed yet)"
            output = _combine(output, f"Dev server available at {url}{note}")
        return ExecutionResult(
            output=output,
            error=str(data.get("error") or ""),
            exit_code=0 if success else int(data.get("exitCode") or 1),
            executor="heavy",
            duration_ms=elapsed_ms(started),
            working_dir=resolved_dir,
            url=url,
            port=_as_port(data.get("port")),
            server_type=data.get("serverType"),
        )

    async def _post(self, path: str, payload: dict[str, Any], read_timeout: float) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                path,
                json=payload,
                timeout=httpx.Timeout(connect=10.0, read=read_timeout, write=30.0, pool=10.0),
            )
        except httpx.TimeoutException as exc:
            raise RemoteTimeout(f"Heavy backend did not answer within {read_timeout:g}s") from exc
        except httpx.TransportError as exc:
            self.capacity.mark_cold()
            raise RemoteUnreachable(f"Heavy backend unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise RemoteProtocolError(
                f"Heavy backend returned HTTP {response.status_code}",
                status=response.status_code,
                body=response.text[:500],
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise RemoteProtocolError("Heavy backend returned a non-JSON body", body=response.text[:200]) from exc
        if not isinstance(data, dict):
            raise RemoteProtocolError("Heavy backend returned a non-object body", body=str(data)[:200])
        return data

    # ---- Health ----

    async def health(self) -> dict[str, Any]:
        """Check backend health."""
        client = await self._get_client()
        try:
            response = await client.get("/health", timeout=10.0)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            return {"status": "error", "error": str(e)}


def _as_port(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
