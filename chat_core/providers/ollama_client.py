"""Ollama 后端适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 Ollama /api/chat 的请求格式（stream=true，NDJSON 逐行返回）。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将每一行增量解析为统一的 ChatStreamChunk。

生成过程中如果消费方任务被取消，`async with` 会关闭底层流式连接，
Ollama 端随即停止生成。
"""

import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from chat_core.domain.models import ChatMessage, ChatRequest, ChatStreamChunk, ChatUsage
from chat_core.providers.registry import OLLAMA_CONFIG


class OllamaClient:
    """Ollama 后端客户端实现。"""

    name = "ollama"

    def __init__(self, cfg=settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        # transport 仅用于注入测试桩（httpx.MockTransport）
        self._settings = cfg
        self._transport = transport

    @property
    def base_url(self) -> str:
        return (getattr(self._settings, "ollama_base_url", None) or OLLAMA_CONFIG.base_url).rstrip("/")

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, trust_env=False, transport=self._transport)

    # ---- 探测 ----

    async def test_connection(self) -> bool:
        try:
            async with self._client(self._settings.connection_test_timeout) as client:
                resp = await client.get(f"{self.base_url}{OLLAMA_CONFIG.health_path}")
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
                    f"{self.base_url}{OLLAMA_CONFIG.chat_path}",
                    json=payload,
                    headers={"Content-Type": "application/json"},
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="Ollama rate limit")
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise ApiError(code="API_ERROR", message=body, http_status=resp.status_code)
                    async for line in resp.aiter_lines():
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if data.get("error"):
                            # Ollama 在流中途出错时会返回 {"error": "..."} 行
                            raise ApiError(code="API_ERROR", message=str(data["error"]), http_status=500)
                        chunk = self._parse_stream_line(data, req)
                        yield chunk
                        if chunk.done:
                            return
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        """将 ChatRequest 转成 Ollama 所需的请求 JSON。"""

        options: Dict[str, Any] = {}
        if req.temperature is not None:
            options["temperature"] = req.temperature
        if req.top_k is not None:
            options["top_k"] = req.top_k
        if req.top_p is not None:
            options["top_p"] = req.top_p
        if req.max_tokens is not None:
            options["num_predict"] = req.max_tokens
        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": True,
        }
        if options:
            payload["options"] = options
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content}
        if message.images:
            payload["images"] = list(message.images)
        return payload

    def _parse_stream_line(self, data: Dict[str, Any], req: ChatRequest) -> ChatStreamChunk:
        msg = data.get("message") or {}
        done = bool(data.get("done", False))
        usage = None
        if done and ("prompt_eval_count" in data or "eval_count" in data):
            prompt = int(data.get("prompt_eval_count") or 0)
            completion = int(data.get("eval_count") or 0)
            usage = ChatUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
        return ChatStreamChunk(
            backend=self.name,
            model=req.model,
            delta=msg.get("content") or "",
            done=done,
            usage=usage,
            raw=data,
        )
