"""对外 API 服务模块。

负责把存储、连通性监控、后端客户端与协调器组装在一起，
并提供简化的函数接口（返回可直接序列化的 dict）供上层界面调用。

所有组件都通过 create_chat_service() 显式构造并传递，不使用全局单例。
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from chat_core.config.settings import Settings, settings as default_settings
from chat_core.domain.models import Conversation, GenerationParameters, QueuedMessageItem
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.infrastructure.storage.queue_store import JsonMessageQueueStore
from chat_core.providers import create_backend
from chat_core.providers.base import BackendClient
from chat_core.services.connectivity import ConnectivityMonitor
from chat_core.services.coordinator import StreamingDeliveryCoordinator


@dataclass
class ChatService:
    """一组协作组件的句柄，由调用方持有并按需传递给各个界面。"""

    conversations: JsonConversationStore
    queue: JsonMessageQueueStore
    monitor: ConnectivityMonitor
    backend: BackendClient
    coordinator: StreamingDeliveryCoordinator

    async def start(self) -> None:
        """修复上次退出遗留的队列不一致，然后启动连通性轮询（首次探测立即进行）。"""

        repaired = await self.coordinator.reconcile()
        self.monitor.start()
        logger.info("Chat service started", extra={"extra": {"backend": self.backend.name, **repaired}})

    async def close(self) -> None:
        try:
            await self.coordinator.close()
        finally:
            await self.monitor.stop()
            self.queue.close()
            logger.info("Chat service closed")

    async def create_conversation(
        self,
        model_name: Optional[str] = None,
        title: Optional[str] = None,
        system_prompt: Optional[str] = None,
        parameters: Optional[GenerationParameters] = None,
        tool_calling_enabled: bool = False,
    ) -> Conversation:
        return await self.conversations.create(
            model_name=model_name or default_settings.default_model,
            title=title,
            system_prompt=system_prompt,
            parameters=parameters,
            tool_calling_enabled=tool_calling_enabled,
        )

    def list_conversations(self) -> List[Dict[str, Any]]:
        """列出所有会话（最近更新的在前）。

        Returns:
            会话列表，每项包含 id, title, model_name, message_count, preview,
            queued_count, is_generating, created_at, updated_at
        """
        return [
            {
                "id": c.id,
                "title": c.title,
                "model_name": c.model_name,
                "message_count": c.message_count,
                "preview": c.last_message_preview,
                "queued_count": self.queue.count_for(c.id),
                "is_generating": self.coordinator.is_generating(c.id),
                "created_at": c.created_at.isoformat(),
                "updated_at": c.updated_at.isoformat(),
            }
            for c in self.conversations.list()
        ]

    def get_conversation_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        """获取会话的所有消息（附件只返回元信息）。"""

        conv = self.conversations.get(conversation_id)
        return [
            {
                "id": m.id,
                "role": m.role,
                "text": m.text,
                "status": m.status,
                "is_streaming": m.is_streaming,
                "is_error": m.is_error,
                "error_message": m.error_message,
                "timestamp": m.timestamp.isoformat(),
                "attachments": [
                    {"id": a.id, "name": a.name, "mime_type": a.mime_type, "size": a.size}
                    for a in m.attachments
                ],
            }
            for m in conv.messages
        ]

    def get_queued_messages(self, conversation_id: str) -> List[QueuedMessageItem]:
        return self.queue.items(conversation_id)


def create_chat_service(
    cfg: Optional[Settings] = None,
    backend: Optional[BackendClient] = None,
    storage_root: Optional[str | Path] = None,
) -> ChatService:
    """按配置构造一组新的服务组件。

    Args:
        cfg: 配置对象，默认使用模块级 settings
        backend: 后端客户端（可选，默认按 cfg.default_backend 创建）
        storage_root: 存储根目录（可选，覆盖 cfg.storage_root）
    """
    cfg = cfg or default_settings
    root = storage_root or cfg.storage_root
    backend = backend or create_backend(cfg.default_backend, cfg)
    conversations = JsonConversationStore(root=root)
    queue = JsonMessageQueueStore(root=root, max_size=cfg.max_queue_size)
    monitor = ConnectivityMonitor(
        backend,
        poll_interval=cfg.connectivity_poll_interval,
        probe_timeout=cfg.connection_test_timeout,
    )
    coordinator = StreamingDeliveryCoordinator(
        conversations,
        queue,
        monitor,
        backend,
        drain_delay=cfg.queue_drain_delay,
        max_context_messages=cfg.max_context_messages,
    )
    return ChatService(
        conversations=conversations,
        queue=queue,
        monitor=monitor,
        backend=backend,
        coordinator=coordinator,
    )
