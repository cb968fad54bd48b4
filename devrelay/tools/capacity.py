"""Capacity control — make sure the heavy backend has a running instance.

Two providers:
  HttpCapacityProvider  talks to a scaling API (GET/POST {base}/instances)
  HealthProbeCapacity   no scaling API: counts the backend as one instance
                        when its /health answers, and cannot scale

CapacityController owns the cold/warm state and the bounded poll.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import httpx
import structlog

from devrelay.config import settings
from devrelay.models.errors import CapacityUnavailable
from devrelay.utils.clock import monotonic

logger = structlog.get_logger().bind(component="tools.capacity")


class CapacityProvider(Protocol):
    async def running_count(self) -> int: ...

    async def scale_to(self, desired: int) -> None: ...

    async def close(self) -> None: ...


class HttpCapacityProvider:
    """Scaling API client.

    ``GET /instances`` returns ``{"running": n, "desired": m}``;
    ``POST /instances`` with ``{"desired": n}`` requests a new size.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def running_count(self) -> int:
        client = await self._get_client()
        response = await client.get("/instances")
        response.raise_for_status()
        try:
            data = response.json()
            return int(data.get("running", 0))
        except (ValueError, TypeError, AttributeError) as exc:
            raise CapacityUnavailable(
                "Scaling API returned an unreadable instance count",
                status_code=response.status_code,
                body=response.text[:200],
            ) from exc

    async def scale_to(self, desired: int) -> None:
        client = await self._get_client()
        response = await client.post("/instances", json={"desired": desired})
        response.raise_for_status()
        logger.info("capacity_scale_requested", desired=desired)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class HealthProbeCapacity:
    """Treats a healthy backend as one running instance."""

    def __init__(self, backend_url: str, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.backend_url = backend_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def running_count(self) -> int:
        async with httpx.AsyncClient(
            base_url=self.backend_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.get("/health")
            except httpx.HTTPError:
                return 0
        return 1 if response.status_code < 500 else 0

    async def scale_to(self, desired: int) -> None:
        # Nothing to scale; the poll loop just waits for /health to answer
        logger.debug("capacity_scale_unsupported", desired=desired)

    async def close(self) -> None:
        pass


class CapacityController:
    """Cold-start guard in front of the heavy backend."""

    def __init__(
        self,
        provider: CapacityProvider,
        wait_seconds: float | None = None,
        poll_initial: float | None = None,
        poll_max: float | None = None,
    ) -> None:
        self.provider = provider
        self.wait_seconds = settings.capacity_wait_seconds if wait_seconds is None else wait_seconds
        self.poll_initial = settings.capacity_poll_initial if poll_initial is None else poll_initial
        self.poll_max = settings.capacity_poll_max if poll_max is None else poll_max
        self._warm = False
        self._lock = asyncio.Lock()

    @property
    def warm(self) -> bool:
        return self._warm

    def mark_cold(self) -> None:
        self._warm = False

    async def ensure(self) -> None:
        """Return once at least one instance runs; raise CapacityUnavailable otherwise.

        Concurrent callers share one poll loop.
        """
        if self._warm:
            return
        async with self._lock:
            if self._warm:
                return
            await self._ensure_locked()

    async def _ensure_locked(self) -> None:
        started = monotonic()
        try:
            if await self.provider.running_count() > 0:
                self._warm = True
                return
            logger.info("capacity_cold_start")
            await self.provider.scale_to(1)
        except httpx.HTTPError as exc:
            raise CapacityUnavailable(f"Capacity check failed: {exc}") from exc

        delay = self.poll_initial
        attempts = 0
        while True:
            remaining = self.wait_seconds - (monotonic() - started)
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay, remaining))
            attempts += 1
            try:
                running = await self.provider.running_count()
            except (httpx.HTTPError, CapacityUnavailable) as exc:
                logger.debug("capacity_poll_error", attempt=attempts, error=str(exc))
                running = 0
            if running > 0:
                self._warm = True
                logger.info("capacity_ready", attempts=attempts, waited_s=round(monotonic() - started, 1))
                return
            delay = min(delay * 2, self.poll_max)

        logger.warning("capacity_unavailable", attempts=attempts, waited_s=round(monotonic() - started, 1))
        raise CapacityUnavailable(
            f"Compute backend did not start within {self.wait_seconds:g}s; try again shortly",
            attempts=attempts,
        )

    async def close(self) -> None:
        await self.provider.close()
