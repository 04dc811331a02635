"""Chat Core 顶层包。

该包提供聊天客户端的消息投递与流式生成核心，
包括配置加载、领域模型、后端适配（Ollama / LiteLLM）、
连通性监控、离线消息队列、会话存储以及流式投递协调器。
"""

from chat_core.api.service import ChatService, create_chat_service

__all__ = ["ChatService", "create_chat_service"]
