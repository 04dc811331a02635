"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：显式参数 > 环境变量 > .env > config.yaml > 默认值。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CORE_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """核心层配置（使用 Pydantic）。"""

    # ---- 后端相关配置 ----
    default_backend: str = Field(
        default="ollama",
        description="默认使用的后端名称，例如 ollama、litellm",
    )
    default_model: str = Field(default="llama3.2", description="新建会话时使用的模型名")

    # Ollama
    ollama_base_url: str = Field(default="http://localhost:11434", description="Ollama 服务地址")
    # LiteLLM / OpenAI 兼容代理
    litellm_base_url: str = Field(default="http://localhost:4000/v1", description="LiteLLM 代理地址")
    litellm_api_key: Optional[str] = Field(default=None, description="LiteLLM 代理密钥")

    http_timeout: float = Field(default=120.0, ge=1.0, description="生成请求超时时间（秒）")
    connection_test_timeout: float = Field(default=5.0, gt=0, description="连通性探测超时时间（秒）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 投递策略 ----
    connectivity_poll_interval: float = Field(default=30.0, gt=0, description="连通性轮询间隔（秒）")
    queue_drain_delay: float = Field(
        default=2.0,
        ge=0,
        description="连接恢复后等待多久再开始发送离线队列（秒），用于过滤抖动",
    )
    max_queue_size: int = Field(default=50, ge=1, description="离线队列最大长度")
    max_context_messages: int = Field(default=50, ge=1, le=500, description="最大上下文消息数")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("litellm_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("ollama_base_url", "litellm_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
