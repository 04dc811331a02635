"""后端客户端抽象接口。

协调器不直接依赖具体后端的 HTTP 细节，而是依赖此协议：

- 每种后端实现一个 BackendClient（如 OllamaClient、LiteLlmClient）。
- generate(req) 返回异步增量流；消费方取消任务时，实现必须关闭底层 HTTP 连接，
  传输错误以异常形式抛出，而不是静默停止。
- test_connection() 供 ConnectivityMonitor 探测使用。
"""

from typing import AsyncIterator, Protocol

from chat_core.domain.models import ChatRequest, ChatStreamChunk


class BackendClient(Protocol):
    """LLM 后端客户端协议。"""

    name: str

    def generate(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        ...

    async def test_connection(self) -> bool:
        ...
