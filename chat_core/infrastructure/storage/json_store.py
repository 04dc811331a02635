import asyncio
import copy
import json
import os
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import NotFoundError, StorageError
from chat_core.domain.models import (
    CANCELLED_TEXT,
    DEFAULT_TITLE,
    Conversation,
    GenerationParameters,
    Message,
    new_id,
    utcnow,
)
from chat_core.domain.stores import ConversationStore
from chat_core.infrastructure.logging.logger import logger


class JsonConversationStore(ConversationStore):
    """每个会话一个 JSON 文件（conversations/<id>.json）。

    所有修改都是整份快照的读-改-写：在会话级锁内基于当前快照生成新快照，
    落盘成功后才替换内存中的缓存，返回给调用方的永远是完整的深拷贝。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, Conversation] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._load_all()

    # ---- 读 ----

    def get(self, conversation_id: str) -> Conversation:
        conv = self._cache.get(conversation_id)
        if conv is None:
            raise NotFoundError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
        return copy.deepcopy(conv)

    def list(self) -> List[Conversation]:
        items = sorted(self._cache.values(), key=lambda c: c.updated_at, reverse=True)
        return [copy.deepcopy(c) for c in items]

    def find_message(self, message_id: str) -> Tuple[Conversation, Message]:
        for conv in self._cache.values():
            msg = conv.find_message(message_id)
            if msg is not None:
                snapshot = copy.deepcopy(conv)
                return snapshot, snapshot.find_message(message_id)
        raise NotFoundError(code="MESSAGE_NOT_FOUND", message=message_id)

    # ---- 写 ----

    async def create(
        self,
        model_name: str,
        title: Optional[str] = None,
        system_prompt: Optional[str] = None,
        parameters: Optional[GenerationParameters] = None,
        tool_calling_enabled: bool = False,
    ) -> Conversation:
        now = utcnow()
        conv = Conversation(
            id=new_id("c"),
            title=title or DEFAULT_TITLE,
            model_name=model_name,
            created_at=now,
            updated_at=now,
            system_prompt=system_prompt,
            parameters=parameters or GenerationParameters(),
            tool_calling_enabled=tool_calling_enabled,
        )
        async with self._lock(conv.id):
            await self._commit(conv)
        logger.info("Created conversation", extra={"extra": {"conversation_id": conv.id, "model": model_name}})
        return copy.deepcopy(conv)

    async def add(self, message: Message, to: str, after: Optional[str] = None) -> Conversation:
        """追加一条消息；after 指定时插入到该消息之后（找不到则追加到末尾）。"""

        async with self._lock(to):
            conv = self.get(to)
            if conv.find_message(message.id) is not None:
                raise StorageError(code="DUPLICATE_MESSAGE", message=message.id, conversation_id=to)
            index = conv.index_of(after) if after else -1
            if index >= 0:
                conv.messages.insert(index + 1, copy.deepcopy(message))
            else:
                conv.messages.append(copy.deepcopy(message))
            if conv.title == DEFAULT_TITLE and message.role == "user" and message.text.strip():
                conv.title = Conversation.generate_title(message.text)
            conv.updated_at = utcnow()
            await self._commit(conv)
            return copy.deepcopy(conv)

    async def update(self, conversation: Conversation) -> Conversation:
        async with self._lock(conversation.id):
            self.get(conversation.id)
            conv = copy.deepcopy(conversation)
            conv.updated_at = utcnow()
            await self._commit(conv)
            return copy.deepcopy(conv)

    async def update_message(self, conversation_id: str, message_id: str, **changes) -> Conversation:
        async with self._lock(conversation_id):
            conv = self.get(conversation_id)
            index = conv.index_of(message_id)
            if index < 0:
                raise NotFoundError(code="MESSAGE_NOT_FOUND", message=message_id, conversation_id=conversation_id)
            conv.messages[index] = replace(conv.messages[index], **changes)
            conv.updated_at = utcnow()
            await self._commit(conv)
            return copy.deepcopy(conv)

    async def delete_message(self, conversation_id: str, message_id: str) -> Conversation:
        async with self._lock(conversation_id):
            conv = self.get(conversation_id)
            conv.messages = [m for m in conv.messages if m.id != message_id]
            conv.updated_at = utcnow()
            await self._commit(conv)
            return copy.deepcopy(conv)

    async def clear(self, conversation_id: str) -> Conversation:
        async with self._lock(conversation_id):
            conv = self.get(conversation_id)
            conv.messages = []
            conv.updated_at = utcnow()
            await self._commit(conv)
            return copy.deepcopy(conv)

    async def delete(self, conversation_id: str) -> None:
        async with self._lock(conversation_id):
            if conversation_id not in self._cache:
                raise NotFoundError(code="CONVERSATION_NOT_FOUND", message=conversation_id)
            path = self._path(conversation_id)
            try:
                await asyncio.to_thread(path.unlink, missing_ok=True)
            except OSError as e:
                raise StorageError(code="STORE_DELETE_ERROR", message=str(e), conversation_id=conversation_id)
            self._cache.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)
        logger.info("Deleted conversation", extra={"extra": {"conversation_id": conversation_id}})

    # ---- 内部 ----

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def _path(self, conversation_id: str) -> Path:
        return self._conv_root / f"{conversation_id}.json"

    async def _commit(self, conv: Conversation) -> None:
        await asyncio.to_thread(self._write, conv)
        self._cache[conv.id] = conv

    def _write(self, conv: Conversation) -> None:
        path = self._path(conv.id)
        tmp_path = self._conv_root / f"{conv.id}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(conv.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e), conversation_id=conv.id)

    def _load_all(self) -> None:
        for path in sorted(self._conv_root.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                conv = Conversation.from_dict(data)
            except (OSError, ValueError, KeyError) as e:
                logger.warning(
                    "Skipped unreadable conversation file",
                    extra={"extra": {"path": str(path), "error": str(e)}},
                )
                continue
            self._cache[conv.id] = self._settle_transient_state(conv)

    @staticmethod
    def _settle_transient_state(conv: Conversation) -> Conversation:
        # 进程重启后不存在进行中的生成：流式占位消息收尾，发送中的消息视为失败
        for i, m in enumerate(conv.messages):
            if m.is_streaming:
                conv.messages[i] = replace(m, is_streaming=False, text=m.text or CANCELLED_TEXT)
            elif m.status == "sending":
                conv.messages[i] = replace(m, status="failed")
        return conv
