"""Async client for an OpenAI-compatible inference server.

Only the agent loop uses it, and only through ``chat_simple`` (prompt in,
text out).
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from devrelay.config import settings

logger = structlog.get_logger().bind(component="tools.inference")


class InferenceClient:
    """Chat-completion client with lazy connection setup."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.inference_url).rstrip("/")
        self.model = model or settings.inference_model
        self.api_key = settings.inference_api_key if api_key is None else api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> dict[str, Any]:
        """Send a chat completion request and return the full response dict."""
        client = await self._get_client()
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        response = await client.post("/v1/chat/completions", json=payload)
        response.raise_for_status()
        result = response.json()
        logger.debug(
            "chat_completion",
            model=self.model,
            messages_count=len(messages),
            usage=result.get("usage"),
        )
        return result

    async def chat_simple(
        self,
        prompt: str,
        system: str = "",
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> str:
        """Convenience: send a simple prompt, get back just the text."""
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        result = await self.chat(messages=messages, temperature=temperature, max_tokens=max_tokens)
        return result["choices"][0]["message"]["content"] or ""

    async def health(self) -> dict[str, Any]:
        """Check server health."""
        client = await self._get_client()
        try:
            response = await client.get("/v1/models")
            response.raise_for_status()
            return {"status": "ok", "models": [m.get("id") for m in response.json().get("data", [])]}
        except (httpx.HTTPError, ValueError) as e:
            return {"status": "error", "error": str(e)}
