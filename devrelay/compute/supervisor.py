"""Dev-server supervisor for the compute worker.

Long-running dev servers outlive the request that started them. The
supervisor owns them, keyed by session id (or repository when no session is
given): starting a server for a key that already has one stops the old one
first. Readiness comes from scanning output; when the logs stay ambiguous the
process's listening sockets are used, and after the startup ceiling a live
process is reported anyway with ``confirmed=False``.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from devrelay.config import settings
from devrelay.detection.detector import LOOPBACK_HOSTS, OutputScanner, find_listening_ports
from devrelay.tools.process import ManagedProcess
from devrelay.utils import preview
from devrelay.utils.clock import monotonic

logger = structlog.get_logger().bind(component="compute.supervisor")

SOCKET_POLL_SECONDS = 1.0


def public_url(url: str | None, port: int | None, public_host: str | None) -> str | None:
    """Rewrite a loopback URL to ``public_host``; build one from ``port`` if no URL."""
    if not url:
        if port is None:
            return None
        url = f"http://localhost:{port}"
    if not public_host:
        return url
    parsed = httpx.URL(url)
    if parsed.host in LOOPBACK_HOSTS:
        return str(parsed.copy_with(host=public_host))
    return url


@dataclass
class SupervisedServer:
    key: str
    process: ManagedProcess
    scanner: OutputScanner
    working_dir: str
    port: int | None = None
    url: str | None = None
    confirmed: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def alive(self) -> bool:
        return self.process.running

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "pid": self.process.pid,
            "running": self.alive,
            "exitCode": self.process.returncode,
            "command": self.process.command,
            "workingDir": self.working_dir,
            "url": self.url,
            "webUrl": self.url,
            "port": self.port,
            "confirmed": self.confirmed,
            "serverType": self.scanner.server_type,
            "startedAt": self.started_at.isoformat(),
        }


class DevServerSupervisor:
    """One supervised dev server per key."""

    def __init__(
        self,
        public_host: str | None = None,
        startup_seconds: float | None = None,
        max_output_chars: int | None = None,
    ) -> None:
        self.public_host = settings.compute_public_host if public_host is None else public_host
        self.startup_seconds = startup_seconds or settings.dev_server_startup_seconds
        self.max_output_chars = max_output_chars or settings.max_output_chars
        self._servers: dict[str, SupervisedServer] = {}
        self._lock = asyncio.Lock()

    async def adopt(
        self,
        key: str,
        process: ManagedProcess,
        scanner: OutputScanner,
        working_dir: str,
        listening: list[int] | None = None,
    ) -> SupervisedServer:
        """Take ownership of a process already detected as a dev server.

        The port comes from the output scan, else from ``listening`` (the
        process's own sockets). With neither the server is kept unconfirmed.
        """
        port = scanner.detection.port
        if port is None and listening:
            port = listening[0]
        server = SupervisedServer(
            key=key,
            process=process,
            scanner=scanner,
            working_dir=working_dir,
            port=port,
            url=public_url(scanner.detection.url, port, self.public_host),
            confirmed=port is not None,
        )
        await self._replace(key, server)
        logger.info("dev_server_adopted", key=key, pid=process.pid, port=server.port, url=server.url)
        return server

    async def start(
        self,
        key: str,
        command: str,
        working_dir: str,
        port: int,
        env: dict[str, str] | None = None,
    ) -> SupervisedServer:
        """Start ``command`` and wait (bounded) for it to be reachable."""
        await self.stop(key)

        scanner = OutputScanner(command=command)
        ready = asyncio.Event()

        def on_output(stream: str, text: str) -> None:
            scanner.sink(stream, text)
            if scanner.resolved:
                ready.set()

        process = ManagedProcess(
            command,
            cwd=working_dir,
            env=env,
            on_output=on_output,
            max_output_chars=self.max_output_chars,
        )
        await process.start()
        logger.info("dev_server_starting", key=key, pid=process.pid, command_preview=preview(command))

        listening = await self._await_ready(process, ready)
        server = SupervisedServer(key=key, process=process, scanner=scanner, working_dir=working_dir)

        if scanner.resolved:
            server.port = scanner.detection.port
            server.url = public_url(scanner.detection.url, server.port, self.public_host)
            server.confirmed = True
        elif listening:
            server.port = port if port in listening else listening[0]
            server.url = public_url(None, server.port, self.public_host)
            server.confirmed = True
        else:
            server.port = port
            server.url = public_url(None, port, self.public_host)

        if not process.running:
            # Exited during startup; report it without keeping a dead entry
            await process.kill()
            logger.warning("dev_server_exited", key=key, exit_code=process.returncode)
            return server

        if not server.confirmed:
            logger.warning("dev_server_unconfirmed", key=key, port=port, waited_s=self.startup_seconds)
        await self._replace(key, server)
        return server

    async def _await_ready(self, process: ManagedProcess, ready: asyncio.Event) -> list[int]:
        """Wait for output detection, a listening socket, exit, or the ceiling."""
        deadline = monotonic() + self.startup_seconds
        while not ready.is_set() and process.running:
            remaining = deadline - monotonic()
            if remaining <= 0:
                break
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(ready.wait(), timeout=min(SOCKET_POLL_SECONDS, remaining))
            if not ready.is_set() and process.pid is not None:
                ports = find_listening_ports(process.pid)
                if ports:
                    return ports
        return []

    async def poll_listening_ports(self, process: ManagedProcess, seconds: float | None = None) -> list[int]:
        """Poll ``process``'s listening sockets until one appears, it exits, or ``seconds`` pass."""
        deadline = monotonic() + (seconds or self.startup_seconds)
        while process.running and process.pid is not None:
            ports = find_listening_ports(process.pid)
            if ports:
                return ports
            remaining = deadline - monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(SOCKET_POLL_SECONDS, remaining))
        return []

    async def _replace(self, key: str, server: SupervisedServer) -> None:
        async with self._lock:
            previous = self._servers.get(key)
            self._servers[key] = server
        if previous is not None and previous.process is not server.process:
            await previous.process.kill()
            logger.info("dev_server_replaced", key=key, pid=previous.process.pid)

    async def stop(self, key: str) -> bool:
        async with self._lock:
            server = self._servers.pop(key, None)
        if server is None:
            return False
        await server.process.kill()
        logger.info("dev_server_stopped", key=key, pid=server.process.pid)
        return True

    async def stop_all(self) -> int:
        async with self._lock:
            servers = list(self._servers.values())
            self._servers.clear()
        for server in servers:
            await server.process.kill()
        return len(servers)

    async def status(self, key: str | None = None) -> list[dict[str, Any]]:
        """Describe supervised servers, dropping entries whose process has exited."""
        async with self._lock:
            dead = [k for k, s in self._servers.items() if not s.alive]
            for k in dead:
                del self._servers[k]
            servers = [s for k, s in self._servers.items() if key is None or k == key]
        return [s.to_dict() for s in servers]

    def __len__(self) -> int:
        return len(self._servers)
