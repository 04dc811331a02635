"""LiteLLM（OpenAI 兼容）后端适配器。

接口风格与 OpenAI 一致，使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>（代理未设置密钥时可省略）
- 流式返回为 SSE，每行 `data: {...}`，以 `data: [DONE]` 结束。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from chat_core.domain.models import ChatMessage, ChatRequest, ChatStreamChunk, ChatUsage
from chat_core.providers.registry import LITELLM_CONFIG


class LiteLlmClient:
    """LiteLLM 代理客户端实现。"""

    name = "litellm"

    def __init__(self, cfg=settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = cfg
        self._transport = transport

    @property
    def base_url(self) -> str:
        return (getattr(self._settings, "litellm_base_url", None) or LITELLM_CONFIG.base_url).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = getattr(self._settings, "litellm_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, trust_env=False, transport=self._transport)

    # ---- 探测 ----

    async def test_connection(self) -> bool:
        try:
            async with self._client(self._settings.connection_test_timeout) as client:
                resp = await client.get(f"{self.base_url}{LITELLM_CONFIG.health_path}", headers=self._headers())
        except httpx.HTTPError:
            return False
        return 200 <= resp.status_code < 300

    # ---- 流式生成 ----

    async def generate(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        if not req.model:
            raise ValidationError(code="MISSING_MODEL", message="model name is required")
        payload = self._build_payload(req)
        try:
            async with self._client(self._settings.http_timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}{LITELLM_CONFIG.chat_path}",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="LiteLLM rate limit")
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise ApiError(code="API_ERROR", message=body, http_status=resp.status_code)
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str:
                            continue
                        if data_str == "[DONE]":
                            yield ChatStreamChunk(backend=self.name, model=req.model, delta="", done=True)
                            return
                        try:
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        yield self._parse_stream_chunk(payload_chunk, req)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": True,
        }
        if req.temperature is not None:
            payload["temperature"] = req.temperature
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if req.max_tokens is not None:
            payload["max_tokens"] = req.max_tokens
        # top_k 不是 OpenAI 标准字段，LiteLLM 会透传给支持它的模型
        if req.top_k is not None:
            payload["top_k"] = req.top_k
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        if not message.images:
            return {"role": message.role, "content": message.content}
        parts: List[Dict[str, Any]] = [{"type": "text", "text": message.content}]
        for img in message.images:
            parts.append({"type": "image_url", "image_url": {"url": f"data:image/png;base64,{img}"}})
        return {"role": message.role, "content": parts}

    def _parse_stream_chunk(self, data: Dict[str, Any], req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量（只取 index=0 的候选）。"""

        choices = data.get("choices") or []
        delta = ""
        done = False
        if choices:
            first = choices[0]
            delta = (first.get("delta") or {}).get("content") or ""
            done = first.get("finish_reason") is not None
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatStreamChunk(backend=self.name, model=req.model, delta=delta, done=done, usage=usage, raw=data)
