"""Tests for the background sweeps."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from devrelay.preview.registry import PreviewRegistry
from devrelay.tasks import PeriodicTask, Sweeper


def _registry(status: int = 200) -> PreviewRegistry:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(status)))
    return PreviewRegistry(client=client, public_base_url="https://relay.example")


# ── PeriodicTask ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_periodic_task_runs_until_stopped():
    calls = 0

    async def tick() -> int:
        nonlocal calls
        calls += 1
        return 0

    task = PeriodicTask("tick", 0.01, tick)
    task.start()
    task.start()  # idempotent
    await asyncio.sleep(0.1)
    await task.stop()

    assert calls >= 2
    assert not task.running
    seen = calls
    await asyncio.sleep(0.05)
    assert calls == seen


@pytest.mark.asyncio
async def test_failing_sweep_keeps_running():
    async def broken() -> int:
        raise RuntimeError("sweep bug")

    task = PeriodicTask("broken", 0.01, broken)
    task.start()
    await asyncio.sleep(0.1)
    assert task.running
    await task.stop()
    assert task.failures >= 2
    assert task.failures == task.runs


@pytest.mark.asyncio
async def test_run_once_returns_affected():
    async def three() -> int:
        return 3

    assert await PeriodicTask("three", 60, three).run_once() == 3


# ── Sweeper ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_all_once_evicts_and_cleans(sessions):
    registry = _registry(status=503)
    stale = await sessions.create_session("alice")
    stale.last_activity -= 7200
    await registry.register("idle", "localhost", 8080)
    (await registry.get("idle")).last_accessed -= 7200
    await registry.register("live", "localhost", 8081)

    sweeper = Sweeper(sessions, registry, interval=60, health_interval=60, session_idle=1800, preview_idle=1800)
    results = await sweeper.run_all_once()

    assert results == {"session_eviction": 1, "preview_cleanup": 1, "preview_health": 1}
    assert (await registry.get("live")).status == "error"


@pytest.mark.asyncio
async def test_start_stop_and_status(sessions):
    sweeper = Sweeper(sessions, _registry(), interval=60, health_interval=60)
    sweeper.start()
    try:
        assert all(entry["running"] for entry in sweeper.status())
    finally:
        await sweeper.stop()
    status = sweeper.status()
    assert [entry["name"] for entry in status] == ["session_eviction", "preview_cleanup", "preview_health"]
    assert not any(entry["running"] for entry in status)
