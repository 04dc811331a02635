import json

import httpx
import pytest

from chat_core.domain.exceptions import ApiError, NetworkError
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.providers.litellm_client import LiteLlmClient


class SettingsStub:
    http_timeout = 1.0
    connection_test_timeout = 1.0
    litellm_base_url = "http://proxy.test/v1"
    litellm_api_key = "sk-test"


def _sse(*events):
    lines = [f"data: {json.dumps(e)}" if isinstance(e, dict) else f"data: {e}" for e in events]
    return ("\n\n".join(lines) + "\n\n").encode("utf-8")


def _delta(text, finish_reason=None):
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}]}


async def _collect(client, req):
    return [chunk async for chunk in client.generate(req)]


@pytest.mark.asyncio
async def test_litellm_stream_parses_sse_until_done():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, content=_sse(_delta("Hel"), _delta("lo"), "[DONE]"))

    client = LiteLlmClient(SettingsStub(), transport=httpx.MockTransport(handler))
    req = ChatRequest(
        model="gpt-4o-mini",
        messages=[ChatMessage(role="system", content="be brief"), ChatMessage(role="user", content="hi")],
        temperature=0.5,
        top_k=20,
    )
    chunks = await _collect(client, req)

    assert [c.delta for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].done
    assert captured["url"] == "http://proxy.test/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["payload"]["temperature"] == 0.5
    assert captured["payload"]["top_k"] == 20
    assert "max_tokens" not in captured["payload"]


@pytest.mark.asyncio
async def test_litellm_finish_reason_marks_done_and_usage():
    body = _sse(
        _delta("ok", finish_reason="stop") | {"usage": {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5}}
    )
    client = LiteLlmClient(SettingsStub(), transport=httpx.MockTransport(lambda r: httpx.Response(200, content=body)))

    chunks = await _collect(client, ChatRequest(model="m", messages=[ChatMessage(role="user", content="hi")]))

    assert chunks[0].done
    assert chunks[0].usage.total_tokens == 5


@pytest.mark.asyncio
async def test_litellm_images_become_content_parts():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, content=_sse("[DONE]"))

    client = LiteLlmClient(SettingsStub(), transport=httpx.MockTransport(handler))
    await _collect(client, ChatRequest(model="m", messages=[ChatMessage(role="user", content="look", images=["aGk="])]))

    content = captured["payload"]["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "look"}
    assert content[1]["image_url"]["url"] == "data:image/png;base64,aGk="


@pytest.mark.asyncio
async def test_litellm_without_key_sends_no_auth_header():
    class NoKey(SettingsStub):
        litellm_api_key = None

    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"data": []})

    client = LiteLlmClient(NoKey(), transport=httpx.MockTransport(handler))

    assert await client.test_connection() is True
    assert seen["auth"] is None


@pytest.mark.asyncio
async def test_litellm_errors_are_mapped():
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, content=b"upstream failed")

    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    req = ChatRequest(model="m", messages=[ChatMessage(role="user", content="hi")])

    with pytest.raises(ApiError) as exc_info:
        await _collect(LiteLlmClient(SettingsStub(), transport=httpx.MockTransport(server_error)), req)
    assert exc_info.value.http_status == 500

    with pytest.raises(NetworkError):
        await _collect(LiteLlmClient(SettingsStub(), transport=httpx.MockTransport(timeout)), req)

    unhealthy = LiteLlmClient(SettingsStub(), transport=httpx.MockTransport(server_error))
    assert await unhealthy.test_connection() is False
