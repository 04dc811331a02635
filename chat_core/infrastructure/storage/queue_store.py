"""离线消息队列的 JSON 持久化实现。

整个队列保存在 <storage_root>/queue.json 中，是一个按入队顺序排列的全局列表；
同一会话内按 FIFO 出队，不同会话之间没有顺序保证。

所有修改都在同一把 asyncio.Lock 内完成并原子落盘，保证 dequeue_next
是“比较并删除”语义：两个调用方不可能拿到同一条记录。
"""

import asyncio
import json
import os
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import QueueFullError, StorageError, ValidationError
from chat_core.domain.models import Message, QueuedMessageItem, new_id, utcnow
from chat_core.domain.stores import MessageQueueStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.services.broadcast import Broadcast, Subscription


class JsonMessageQueueStore(MessageQueueStore):
    def __init__(self, root: str | Path | None = None, max_size: Optional[int] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "queue.json"
        self._max_size = max_size or settings.max_queue_size
        self._lock = asyncio.Lock()
        self._updates: Broadcast[List[QueuedMessageItem]] = Broadcast()
        self._queue: List[QueuedMessageItem] = self._load()

    # ---- 查询 ----

    def items(self, conversation_id: Optional[str] = None) -> List[QueuedMessageItem]:
        if conversation_id is None:
            return list(self._queue)
        return [item for item in self._queue if item.conversation_id == conversation_id]

    def count(self) -> int:
        return len(self._queue)

    def count_for(self, conversation_id: str) -> int:
        return sum(1 for item in self._queue if item.conversation_id == conversation_id)

    def contains(self, message_id: str) -> bool:
        return any(item.message_id == message_id for item in self._queue)

    def conversations_with_items(self) -> List[str]:
        """按首次出现顺序返回有待发送消息的会话 id。"""

        seen: List[str] = []
        for item in self._queue:
            if item.conversation_id not in seen:
                seen.append(item.conversation_id)
        return seen

    def is_full(self) -> bool:
        return len(self._queue) >= self._max_size

    def queue_updates(self) -> Subscription[List[QueuedMessageItem]]:
        """订阅队列变化：每次修改后推送完整的队列快照，订阅方自行 diff。"""

        return self._updates.subscribe(replay_latest=False)

    # ---- 修改 ----

    async def enqueue(self, conversation_id: str, message: Message) -> QueuedMessageItem:
        if message.status != "queued":
            raise ValidationError(
                code="MESSAGE_NOT_QUEUED",
                message=f"message {message.id} has status {message.status!r}, expected 'queued'",
            )
        async with self._lock:
            if self.is_full():
                raise QueueFullError(
                    code="QUEUE_FULL",
                    message=f"Queue is full (max {self._max_size} messages)",
                    conversation_id=conversation_id,
                )
            item = QueuedMessageItem(
                id=new_id("q"),
                conversation_id=conversation_id,
                message_id=message.id,
                enqueued_at=utcnow(),
            )
            await self._save([*self._queue, item])
        logger.info(
            "Enqueued message",
            extra={"extra": {"conversation_id": conversation_id, "message_id": message.id, "queue_item_id": item.id}},
        )
        return item

    async def cancel(self, message_id: str) -> bool:
        """按消息 id 移除记录；不存在时什么也不做（幂等）。"""

        async with self._lock:
            remaining = [item for item in self._queue if item.message_id != message_id]
            if len(remaining) == len(self._queue):
                return False
            await self._save(remaining)
        logger.info("Cancelled queued message", extra={"extra": {"message_id": message_id}})
        return True

    async def dequeue_next(self, conversation_id: str) -> Optional[QueuedMessageItem]:
        async with self._lock:
            for index, item in enumerate(self._queue):
                if item.conversation_id == conversation_id:
                    await self._save(self._queue[:index] + self._queue[index + 1:])
                    return item
        return None

    async def clear_conversation(self, conversation_id: str) -> int:
        async with self._lock:
            remaining = [item for item in self._queue if item.conversation_id != conversation_id]
            removed = len(self._queue) - len(remaining)
            if removed:
                await self._save(remaining)
        return removed

    def close(self) -> None:
        self._updates.close()

    # ---- 内部 ----

    async def _save(self, queue: List[QueuedMessageItem]) -> None:
        await asyncio.to_thread(self._write, queue)
        self._queue = queue
        self._updates.publish(list(queue))

    def _write(self, queue: List[QueuedMessageItem]) -> None:
        tmp_path = self._root / f"queue.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps([item.to_dict() for item in queue], ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e))

    def _load(self) -> List[QueuedMessageItem]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return [QueuedMessageItem.from_dict(d) for d in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e))
