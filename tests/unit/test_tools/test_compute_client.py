"""Tests for ComputeBackendClient — wire contract and error mapping via httpx.MockTransport."""

from __future__ import annotations

import json

import httpx
import pytest

from devrelay.config import settings
from devrelay.models.errors import (
    CapacityUnavailable,
    ErrorKind,
    RemoteProtocolError,
    RemoteTimeout,
    RemoteUnreachable,
)
from devrelay.tools.capacity import CapacityController
from devrelay.tools.compute_client import ComputeBackendClient, repository_dir, resolve_working_dir


class StaticProvider:
    def __init__(self, running: int = 1) -> None:
        self.running = running
        self.polls = 0

    async def running_count(self) -> int:
        self.polls += 1
        return self.running

    async def scale_to(self, desired: int) -> None:
        pass

    async def close(self) -> None:
        pass


@pytest.fixture(autouse=True)
def projects_root(monkeypatch):
    monkeypatch.setattr(settings, "compute_projects_root", "/srv/projects")
    monkeypatch.setattr(settings, "compute_default_dir", "/srv")


def _client(handler, provider=None) -> tuple[ComputeBackendClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    capacity = CapacityController(provider or StaticProvider(), wait_seconds=0.05, poll_initial=0.01, poll_max=0.01)
    client = ComputeBackendClient(
        "http://compute.test:8080/",
        timeout=30,
        capacity=capacity,
        transport=httpx.MockTransport(recording),
    )
    return client, requests


# ── Working directory resolution ──────────────────────────────────────────────


def test_repository_dir_sanitizes_name():
    assert repository_dir("my.app/../x") == "/srv/projects/my_app____x"


def test_resolve_working_dir_precedence():
    assert resolve_working_dir("/explicit", "repo") == "/explicit"
    assert resolve_working_dir(None, "repo") == "/srv/projects/repo"
    assert resolve_working_dir(None, None) == "/srv"


def test_host_property():
    client, _ = _client(lambda r: httpx.Response(200))
    assert client.host == "compute.test"


def test_missing_base_url_is_rejected(monkeypatch):
    monkeypatch.setattr(settings, "heavy_backend_url", "")
    with pytest.raises(ValueError):
        ComputeBackendClient()


# ── run_remote() ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_remote_success():
    client, requests = _client(lambda r: httpx.Response(200, json={
        "success": True,
        "output": "BUILD SUCCESSFUL",
        "error": "",
        "exitCode": 0,
        "executionTime": 4200,
    }))

    result = await client.run_remote("./gradlew build", "sess-1", repository="android-app")
    await client.close()

    assert result.success
    assert result.executor == "heavy"
    assert result.output == "BUILD SUCCESSFUL"
    assert result.working_dir == "/srv/projects/android-app"
    body = json.loads(requests[0].content)
    assert requests[0].url.path == "/execute-heavy"
    assert body == {
        "command": "./gradlew build",
        "workingDir": "/srv/projects/android-app",
        "repository": "android-app",
        "sessionId": "sess-1",
    }


@pytest.mark.asyncio
async def test_run_remote_failure_exit_code_is_a_result():
    client, _ = _client(lambda r: httpx.Response(200, json={
        "success": False, "output": "compiling", "error": "error[E0425]", "exitCode": 101,
    }))
    result = await client.run_remote("cargo build", "s")
    assert not result.success
    assert result.exit_code == 101
    assert result.output == "compiling\nerror[E0425]"
    assert result.error == "error[E0425]"


@pytest.mark.asyncio
async def test_run_remote_carries_server_url():
    client, _ = _client(lambda r: httpx.Response(200, json={
        "exitCode": 0, "output": "", "webUrl": "http://localhost:8080", "port": "8080", "serverType": "Vite",
    }))
    result = await client.run_remote("npm run dev", "s")
    assert result.url == "http://localhost:8080"
    assert result.port == 8080
    assert result.server_type == "Vite"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"output": "no exit code"}),
        httpx.Response(200, json={"exitCode": "0"}),
        httpx.Response(200, json={"exitCode": True}),
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=[1, 2, 3]),
        httpx.Response(502, text="bad gateway"),
    ],
)
async def test_malformed_responses_are_protocol_errors(response):
    client, _ = _client(lambda r: response)
    with pytest.raises(RemoteProtocolError) as exc_info:
        await client.run_remote("cargo build", "s")
    assert exc_info.value.kind == ErrorKind.REMOTE_PROTOCOL_ERROR


@pytest.mark.asyncio
async def test_connection_failure_is_unreachable_and_marks_cold():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = _client(handler)
    await client.capacity.ensure()
    with pytest.raises(RemoteUnreachable):
        await client.run_remote("cargo build", "s")
    assert not client.capacity.warm


@pytest.mark.asyncio
async def test_read_timeout_is_remote_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client, _ = _client(handler)
    with pytest.raises(RemoteTimeout):
        await client.run_remote("cargo build", "s")


@pytest.mark.asyncio
async def test_no_capacity_means_no_request():
    client, requests = _client(lambda r: httpx.Response(200, json={"exitCode": 0}), provider=StaticProvider(0))
    with pytest.raises(CapacityUnavailable):
        await client.run_remote("cargo build", "s")
    assert requests == []


# ── start_dev_server() ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_dev_server_payload_and_result():
    client, requests = _client(lambda r: httpx.Response(200, json={
        "success": True, "url": "http://compute.test:9090", "port": 9090, "confirmed": True,
    }))

    result = await client.start_dev_server("s", repository="web", port=9090, command="flutter run -d web-server")

    body = json.loads(requests[0].content)
    assert requests[0].url.path == "/dev-server/start"
    assert body["port"] == 9090
    assert body["command"] == "flutter run -d web-server"
    assert result.success
    assert result.port == 9090
    assert "Dev server available at http://compute.test:9090" in result.output


@pytest.mark.asyncio
async def test_start_dev_server_defaults_port_and_omits_command():
    client, requests = _client(lambda r: httpx.Response(200, json={
        "success": True, "url": "http://compute.test:8080", "confirmed": False,
    }))
    result = await client.start_dev_server("s")
    body = json.loads(requests[0].content)
    assert body["port"] == 8080
    assert "command" not in body
    assert "not confirmed" in result.output


@pytest.mark.asyncio
async def test_start_dev_server_failure():
    client, _ = _client(lambda r: httpx.Response(200, json={"success": False, "error": "exited early"}))
    result = await client.start_dev_server("s")
    assert not result.success
    assert result.exit_code == 1
    assert result.error == "exited early"


@pytest.mark.asyncio
async def test_start_dev_server_without_success_flag():
    client, _ = _client(lambda r: httpx.Response(200, json={"url": "http://x:1"}))
    with pytest.raises(RemoteProtocolError):
        await client.start_dev_server("s")


# ── health() ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health_ok_and_error():
    client, _ = _client(lambda r: httpx.Response(200, json={"status": "healthy", "devServers": 0}))
    assert (await client.health())["status"] == "healthy"

    broken, _ = _client(lambda r: httpx.Response(500))
    assert (await broken.health())["status"] == "error"
