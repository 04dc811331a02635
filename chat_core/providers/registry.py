"""后端配置注册表。

集中维护每种后端的默认地址与端点路径，具体地址可以被 settings 覆盖。
"""

from dataclasses import dataclass
from typing import Mapping


@dataclass
class BackendConfig:
    """某个后端的整体配置。"""

    name: str
    base_url: str
    chat_path: str
    health_path: str


OLLAMA_CONFIG = BackendConfig(
    name="ollama",
    base_url="http://localhost:11434",
    chat_path="/api/chat",
    health_path="/api/tags",
)

# LiteLLM 代理对外暴露 OpenAI 兼容接口
LITELLM_CONFIG = BackendConfig(
    name="litellm",
    base_url="http://localhost:4000/v1",
    chat_path="/chat/completions",
    health_path="/models",
)


BACKEND_REGISTRY: Mapping[str, BackendConfig] = {
    "ollama": OLLAMA_CONFIG,
    "litellm": LITELLM_CONFIG,
}


def get_backend_config(name: str) -> BackendConfig:
    """根据名称获取 BackendConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in BACKEND_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown backend: {name!r}")
