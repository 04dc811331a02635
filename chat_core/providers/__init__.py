"""LLM 后端集成层。

该包下的模块负责：
- 定义后端客户端抽象接口 (base)。
- 维护后端默认地址与端点 (registry)。
- 提供各后端的具体实现 (ollama_client、litellm_client)。
"""

from typing import Literal, Optional

from chat_core.config.settings import settings
from chat_core.providers.base import BackendClient
from chat_core.providers.litellm_client import LiteLlmClient
from chat_core.providers.ollama_client import OllamaClient


def create_backend(name: Optional[str] = None, cfg=None) -> BackendClient:
    """根据名称创建后端客户端，默认取配置中的 default_backend。"""

    cfg = cfg or settings
    backend_name = (name or getattr(cfg, "default_backend", "ollama")).lower()
    if backend_name == "litellm":
        return LiteLlmClient(cfg)
    if backend_name == "ollama":
        return OllamaClient(cfg)
    raise KeyError(f"Unknown backend: {backend_name!r}")


DefaultBackendName = Literal["ollama", "litellm"]
