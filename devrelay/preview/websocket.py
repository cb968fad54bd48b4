"""WebSocket relay for preview routes.

Dev servers push hot-reload events over WebSocket; those upgrades are
bridged frame-by-frame to the target with the ``websockets`` client rather
than going through the buffered HTTP forwarder.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from devrelay.preview.registry import SESSION_HEADER, PreviewRegistry

logger = structlog.get_logger().bind(component="preview.websocket")

CLOSE_NOT_FOUND = 4404
CLOSE_UNAVAILABLE = 4503
CLOSE_UPSTREAM_ERROR = 1011
OPEN_TIMEOUT_SECONDS = 10.0


async def _client_to_upstream(client: WebSocket, upstream: ClientConnection) -> None:
    while True:
        message = await client.receive()
        if message["type"] == "websocket.disconnect":
            return
        if message.get("text") is not None:
            await upstream.send(message["text"])
        elif message.get("bytes") is not None:
            await upstream.send(message["bytes"])


async def _upstream_to_client(client: WebSocket, upstream: ClientConnection) -> None:
    async for frame in upstream:
        if isinstance(frame, bytes):
            await client.send_bytes(frame)
        else:
            await client.send_text(frame)


async def bridge_websocket(
    client: WebSocket,
    registry: PreviewRegistry,
    session_id: str,
    sub_path: str,
) -> None:
    """Relay frames between ``client`` and the session's dev server until either side closes."""
    binding = await registry.get(session_id)
    if binding is None:
        await client.close(code=CLOSE_NOT_FOUND, reason="Session not found")
        return
    if binding.status != "active":
        await client.close(code=CLOSE_UNAVAILABLE, reason="Server not available")
        return

    target = f"ws://{binding.target_host}:{binding.target_port}/{sub_path.lstrip('/')}"
    if client.url.query:
        target = f"{target}?{client.url.query}"
    requested = [p.strip() for p in client.headers.get("sec-websocket-protocol", "").split(",") if p.strip()]

    try:
        upstream = await connect(
            target,
            subprotocols=requested or None,
            additional_headers={SESSION_HEADER: session_id},
            open_timeout=OPEN_TIMEOUT_SECONDS,
            max_size=None,
        )
    except (OSError, TimeoutError, WebSocketException) as exc:
        await registry.mark(binding, "error", f"WebSocket connect failed: {exc}")
        await client.close(code=CLOSE_UPSTREAM_ERROR, reason="Dev server not reachable")
        return

    await client.accept(subprotocol=upstream.subprotocol)
    binding.touch()
    logger.info("preview_ws_open", session_id=session_id, target=target)

    tasks = [
        asyncio.create_task(_client_to_upstream(client, upstream)),
        asyncio.create_task(_upstream_to_client(client, upstream)),
    ]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, (ConnectionClosed, WebSocketDisconnect)):
                logger.warning("preview_ws_relay_error", session_id=session_id, error=str(exc))
    finally:
        await upstream.close()
        with contextlib.suppress(RuntimeError):
            await client.close()
        binding.touch()
        logger.info("preview_ws_closed", session_id=session_id)
