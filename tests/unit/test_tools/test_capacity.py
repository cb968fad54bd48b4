"""Tests for CapacityController and its providers."""

from __future__ import annotations

import json

import httpx
import pytest

from devrelay.models.errors import CapacityUnavailable
from devrelay.tools.capacity import CapacityController, HealthProbeCapacity, HttpCapacityProvider


class ScriptedProvider:
    """Returns successive running counts; repeats the last one."""

    def __init__(self, counts: list[int], fail_first: bool = False) -> None:
        self.counts = list(counts)
        self.fail_first = fail_first
        self.polls = 0
        self.scale_requests: list[int] = []
        self.closed = False

    async def running_count(self) -> int:
        self.polls += 1
        if self.fail_first and self.polls == 1:
            raise httpx.ConnectError("scaling API down")
        if len(self.counts) > 1:
            return self.counts.pop(0)
        return self.counts[0]

    async def scale_to(self, desired: int) -> None:
        self.scale_requests.append(desired)

    async def close(self) -> None:
        self.closed = True


def _controller(provider, wait=1.0) -> CapacityController:
    return CapacityController(provider, wait_seconds=wait, poll_initial=0.01, poll_max=0.05)


# ── CapacityController ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_already_running_is_warm_immediately():
    provider = ScriptedProvider([1])
    controller = _controller(provider)
    await controller.ensure()
    assert controller.warm
    assert provider.scale_requests == []


@pytest.mark.asyncio
async def test_warm_controller_skips_the_provider():
    provider = ScriptedProvider([1])
    controller = _controller(provider)
    await controller.ensure()
    await controller.ensure()
    assert provider.polls == 1


@pytest.mark.asyncio
async def test_cold_start_scales_and_polls_until_running():
    provider = ScriptedProvider([0, 0, 0, 1])
    controller = _controller(provider)
    await controller.ensure()
    assert provider.scale_requests == [1]
    assert provider.polls == 4
    assert controller.warm


@pytest.mark.asyncio
async def test_ceiling_raises_capacity_unavailable():
    controller = _controller(ScriptedProvider([0]), wait=0.1)
    with pytest.raises(CapacityUnavailable) as exc_info:
        await controller.ensure()
    assert "did not start" in exc_info.value.message
    assert exc_info.value.details["attempts"] >= 1
    assert not controller.warm


@pytest.mark.asyncio
async def test_initial_provider_failure_is_capacity_unavailable():
    controller = _controller(ScriptedProvider([1], fail_first=True))
    with pytest.raises(CapacityUnavailable):
        await controller.ensure()


@pytest.mark.asyncio
async def test_mark_cold_forces_a_new_check():
    provider = ScriptedProvider([1])
    controller = _controller(provider)
    await controller.ensure()
    controller.mark_cold()
    assert not controller.warm
    await controller.ensure()
    assert provider.polls == 2


@pytest.mark.asyncio
async def test_close_closes_provider():
    provider = ScriptedProvider([1])
    await _controller(provider).close()
    assert provider.closed


# ── Providers ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_http_provider_reads_and_scales():
    seen: list[tuple[str, dict | None]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, json.loads(request.content) if request.content else None))
        if request.method == "GET":
            return httpx.Response(200, json={"running": 2, "desired": 2})
        return httpx.Response(202, json={"desired": 1})

    provider = HttpCapacityProvider("http://scaler.test/", transport=httpx.MockTransport(handler))
    try:
        assert await provider.running_count() == 2
        await provider.scale_to(1)
    finally:
        await provider.close()
    assert seen == [("GET", None), ("POST", {"desired": 1})]


@pytest.mark.asyncio
async def test_http_provider_raises_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    provider = HttpCapacityProvider("http://scaler.test", transport=transport)
    with pytest.raises(httpx.HTTPStatusError):
        await provider.running_count()
    await provider.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "running"), [(200, 1), (404, 1), (503, 0)])
async def test_health_probe_counts_healthy_backend(status, running):
    transport = httpx.MockTransport(lambda request: httpx.Response(status))
    assert await HealthProbeCapacity("http://compute.test", transport=transport).running_count() == running


@pytest.mark.asyncio
async def test_health_probe_unreachable_is_zero():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    probe = HealthProbeCapacity("http://compute.test", transport=httpx.MockTransport(handler))
    assert await probe.running_count() == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=[1, 2]),
        httpx.Response(200, json={"running": "two"}),
        httpx.Response(200, json={"running": None}),
    ],
    ids=["html", "list", "text-count", "null-count"],
)
async def test_http_provider_unreadable_count_is_capacity_unavailable(response):
    provider = HttpCapacityProvider("http://scaler.test", transport=httpx.MockTransport(lambda request: response))
    try:
        with pytest.raises(CapacityUnavailable) as excinfo:
            await provider.running_count()
    finally:
        await provider.close()
    assert excinfo.value.details["status_code"] == 200


@pytest.mark.asyncio
async def test_controller_reports_gateway_page_as_capacity_unavailable():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    controller = _controller(HttpCapacityProvider("http://scaler.test", transport=transport))
    with pytest.raises(CapacityUnavailable):
        await controller.ensure()
    assert not controller.warm
    await controller.close()
