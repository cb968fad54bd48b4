"""Tests for InferenceClient — OpenAI-compatible chat completions."""

from __future__ import annotations

import json

import httpx
import pytest

from devrelay.tools.inference import InferenceClient


def _completion(text: str | None) -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": text}}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5},
    }


@pytest.mark.asyncio
async def test_chat_simple_sends_system_and_user_messages():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json=_completion('{"completed": true}'))

    client = InferenceClient(
        base_url="http://llm.test/",
        model="coder-7b",
        api_key="sk-test",
        transport=httpx.MockTransport(handler),
    )
    text = await client.chat_simple("list files", system="be brief", temperature=0.3, max_tokens=100)
    await client.close()

    assert text == '{"completed": true}'
    request = captured[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "coder-7b"
    assert body["temperature"] == 0.3
    assert body["max_tokens"] == 100
    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "list files"},
    ]


@pytest.mark.asyncio
async def test_no_api_key_no_auth_header():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json=_completion(None))

    client = InferenceClient(base_url="http://llm.test", api_key="", transport=httpx.MockTransport(handler))
    assert await client.chat_simple("hi") == ""
    assert "Authorization" not in captured[0].headers
    assert len(json.loads(captured[0].content)["messages"]) == 1


@pytest.mark.asyncio
async def test_http_error_propagates():
    client = InferenceClient(
        base_url="http://llm.test",
        transport=httpx.MockTransport(lambda r: httpx.Response(503)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await client.chat_simple("hi")


@pytest.mark.asyncio
async def test_health_lists_models():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(200, json={"data": [{"id": "coder-7b"}, {"id": "embed"}]})

    client = InferenceClient(base_url="http://llm.test", transport=httpx.MockTransport(handler))
    assert await client.health() == {"status": "ok", "models": ["coder-7b", "embed"]}


@pytest.mark.asyncio
async def test_health_reports_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = InferenceClient(base_url="http://llm.test", transport=httpx.MockTransport(handler))
    health = await client.health()
    assert health["status"] == "error"
