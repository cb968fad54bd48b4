"""Preview Proxy Registry — session → dev-server bindings and HTTP forwarding.

The binding table is a dict under one asyncio.Lock. Forwarding itself runs
outside the lock; only the status/last-access updates re-enter it, and they
re-check that the binding they started with is still the registered one so a
request that finishes after a re-register cannot clobber the new binding.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from devrelay.config import settings
from devrelay.models.activity import ActivityLog
from devrelay.models.errors import DevRelayError, ServiceUnavailable, SessionNotFound
from devrelay.models.schemas import PreviewBinding

logger = structlog.get_logger().bind(component="preview.registry")

HOP_BY_HOP_HEADERS = frozenset([
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "trailers", "transfer-encoding", "upgrade",
])
# httpx hands back decoded bodies; length/encoding are recomputed downstream
_STRIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}

SESSION_HEADER = "X-DevRelay-Session"
PREVIEW_HEADER = "X-DevRelay-Preview"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Origin, X-Requested-With, Content-Type, Accept, Authorization",
}


@dataclass
class ProxyRequest:
    method: str = "GET"
    query: str = ""
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    scheme: str = "http"
    host: str = ""


@dataclass
class ProxyResponse:
    status_code: int
    headers: dict[str, str]
    body: bytes

    @classmethod
    def from_error(cls, exc: DevRelayError) -> ProxyResponse:
        """Flat JSON error body: message, kind, then the error's details."""
        payload = {"error": exc.message, "errorKind": exc.kind.value, **exc.details}
        return cls(
            status_code=exc.http_status,
            headers={"content-type": "application/json", **CORS_HEADERS},
            body=json.dumps(payload).encode("utf-8"),
        )

    def json(self) -> Any:
        return json.loads(self.body)


class PreviewRegistry:
    """At most one binding per session id."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        public_base_url: str | None = None,
        proxy_timeout: float | None = None,
        health_timeout: float | None = None,
        activity: ActivityLog | None = None,
    ) -> None:
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self.proxy_timeout = proxy_timeout or settings.proxy_timeout_seconds
        self.health_timeout = health_timeout or settings.preview_health_timeout
        self.activity = activity
        self._client = client
        self._owns_client = client is None
        self._bindings: dict[str, PreviewBinding] = {}
        self._lock = asyncio.Lock()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.proxy_timeout, follow_redirects=False)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ---- Binding lifecycle ----

    async def register(
        self,
        session_id: str,
        target_host: str,
        target_port: int,
        server_type: str = "unknown",
    ) -> PreviewBinding:
        """Create or replace the binding for ``session_id``."""
        binding = PreviewBinding(
            session_id=session_id,
            target_host=target_host,
            target_port=int(target_port),
            server_type=server_type or "unknown",
        )
        async with self._lock:
            replaced = session_id in self._bindings
            self._bindings[session_id] = binding

        logger.info(
            "preview_registered",
            session_id=session_id,
            target=binding.target,
            server_type=binding.server_type,
            replaced=replaced,
        )
        if self.activity:
            self.activity.record(
                session_id,
                "preview_registered",
                "preview.registry",
                target=binding.target,
                server_type=binding.server_type,
                replaced=replaced,
            )
        return binding

    async def get(self, session_id: str) -> PreviewBinding | None:
        async with self._lock:
            return self._bindings.get(session_id)

    async def remove(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._bindings.pop(session_id, None)
        if removed:
            logger.info("preview_removed", session_id=session_id)
        return removed is not None

    async def mark(self, binding: PreviewBinding, status: str, error: str | None = None) -> None:
        """Update status of ``binding`` if it is still the registered one."""
        async with self._lock:
            if self._bindings.get(binding.session_id) is not binding:
                return
            binding.status = status  # type: ignore[assignment]
            binding.last_error = error if status == "error" else None
            if status == "active":
                binding.touch()
        if status == "error":
            logger.warning("preview_error", session_id=binding.session_id, target=binding.target, error=error)

    def preview_url(self, session_id: str, path: str = "") -> str:
        return f"{self.public_base_url}/preview/{session_id}/{path.lstrip('/')}"

    # ---- Forwarding ----

    async def route_request(self, session_id: str, sub_path: str, request: ProxyRequest) -> ProxyResponse:
        """Forward ``request`` to the session's dev server, or return a 404/503 body."""
        binding = await self.get(session_id)
        if binding is None:
            return ProxyResponse.from_error(SessionNotFound(
                "Session not found",
                sessionId=session_id,
                message="No active server found for this session",
            ))
        if binding.status != "active":
            return ProxyResponse.from_error(ServiceUnavailable(
                "Server not available",
                sessionId=session_id,
                status=binding.status,
                lastError=binding.last_error,
            ))

        url = f"{binding.target}/{sub_path.lstrip('/')}"
        if request.query:
            url = f"{url}?{request.query}"

        try:
            upstream = await self._get_client().request(
                request.method,
                url,
                headers=self._outgoing_headers(request, binding),
                content=request.body or None,
                timeout=self.proxy_timeout,
            )
        except httpx.HTTPError as exc:
            await self.mark(binding, "error", f"{type(exc).__name__}: {exc}")
            return ProxyResponse.from_error(ServiceUnavailable(
                "Service Unavailable",
                message="The development server is not responding",
                sessionId=session_id,
                details=str(exc) or type(exc).__name__,
            ))

        binding.touch()
        headers = {
            k: v for k, v in upstream.headers.items() if k.lower() not in _STRIPPED_RESPONSE_HEADERS
        }
        headers.update(CORS_HEADERS)
        headers[PREVIEW_HEADER] = "true"
        headers[SESSION_HEADER] = session_id
        logger.debug(
            "preview_forwarded",
            session_id=session_id,
            method=request.method,
            path=sub_path,
            status=upstream.status_code,
        )
        return ProxyResponse(status_code=upstream.status_code, headers=headers, body=upstream.content)

    def _outgoing_headers(self, request: ProxyRequest, binding: PreviewBinding) -> dict[str, str]:
        headers = {
            k: v
            for k, v in request.headers
            if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in ("host", "content-length")
        }
        headers["host"] = f"{binding.target_host}:{binding.target_port}"
        headers[SESSION_HEADER] = binding.session_id
        headers["X-Forwarded-Proto"] = request.scheme
        if request.host:
            headers["X-Forwarded-Host"] = request.host
        return headers

    # ---- Health & cleanup ----

    async def health_check(self, session_id: str) -> dict[str, Any]:
        """HEAD-probe the target and update the binding status."""
        binding = await self.get(session_id)
        if binding is None:
            return {"healthy": False, "status": "not_found", "sessionId": session_id}
        try:
            response = await self._get_client().head(binding.target + "/", timeout=self.health_timeout)
        except httpx.HTTPError as exc:
            await self.mark(binding, "error", f"Health check failed: {exc}")
            return {"healthy": False, "status": "error", "error": str(exc), "target": binding.target}

        healthy = response.status_code < 500
        if healthy:
            await self.mark(binding, "active")
        else:
            await self.mark(binding, "error", f"Health check returned HTTP {response.status_code}")
        return {
            "healthy": healthy,
            "status": binding.status,
            "httpStatus": response.status_code,
            "target": binding.target,
        }

    async def health_sweep(self) -> int:
        """Probe every binding; returns the number found unhealthy."""
        async with self._lock:
            session_ids = list(self._bindings)
        results = await asyncio.gather(*(self.health_check(sid) for sid in session_ids))
        return sum(1 for r in results if not r["healthy"])

    async def cleanup_inactive(self, max_idle: float | None = None) -> int:
        """Remove bindings idle for longer than ``max_idle`` seconds."""
        max_idle = settings.preview_idle_timeout if max_idle is None else max_idle
        async with self._lock:
            stale = [sid for sid, b in self._bindings.items() if b.idle_seconds() > max_idle]
            for sid in stale:
                del self._bindings[sid]
        for sid in stale:
            logger.info("preview_expired", session_id=sid)
        return len(stale)

    async def stats(self) -> dict[str, Any]:
        async with self._lock:
            bindings = list(self._bindings.values())
        by_type: dict[str, int] = {}
        for b in bindings:
            by_type[b.server_type] = by_type.get(b.server_type, 0) + 1
        return {
            "total": len(bindings),
            "active": sum(1 for b in bindings if b.status == "active"),
            "error": sum(1 for b in bindings if b.status == "error"),
            "byType": by_type,
        }

    async def list_bindings(self) -> list[dict[str, Any]]:
        async with self._lock:
            bindings = list(self._bindings.values())
        return [b.to_dict() | {"previewUrl": self.preview_url(b.session_id)} for b in bindings]
