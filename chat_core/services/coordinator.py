"""流式投递协调器。

StreamingDeliveryCoordinator 是“某个会话的下一条 AI 回复如何产生”的唯一决策点：

- 在线时：追加用户消息和一条流式占位的助手消息，打开一次生成，
  每收到一段增量就把完整的会话快照发布给所有观察者。
- 离线时：用户消息以 queued 状态写入会话并进入离线队列，不调用后端。
- 连接恢复时：按会话串行（会话之间可以并发）地把队列里的消息重新走一遍在线路径。

每个会话同一时刻最多只有一个“活跃生成”。这里区分两种取消：

- 观察者取消自己的 Subscription：只是不再接收事件，后端请求照常进行。
- cancel_generation()：中止后端请求，保留已收到的部分文本，并让所有观察者正常结束。

活跃生成登记表（conversation_id -> _Generation）只由协调器在会话级锁内修改。
"""

import asyncio
import base64
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, List, Literal, Optional, Set

from chat_core.config.settings import settings
from chat_core.domain.exceptions import (
    ApiError,
    AttachmentError,
    BusinessError,
    NotFoundError,
    ValidationError,
)
from chat_core.domain.models import (
    CANCELLED_TEXT,
    Attachment,
    ChatMessage,
    ChatRequest,
    ConnectivityStatus,
    Conversation,
    Message,
)
from chat_core.domain.stores import ConversationStore, MessageQueueStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import BackendClient
from chat_core.services.broadcast import Broadcast, Subscription
from chat_core.services.connectivity import ConnectivityMonitor

DrainOutcome = Literal["empty", "failed", "offline", "closed"]


@dataclass(eq=False)
class _Generation:
    """一次进行中的生成。task 的生命周期即后端请求的生命周期。"""

    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    drain: bool
    channel: Broadcast = field(default_factory=Broadcast)
    task: Optional[asyncio.Task] = None
    chunks: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


class StreamingDeliveryCoordinator:
    def __init__(
        self,
        conversations: ConversationStore,
        queue: MessageQueueStore,
        monitor: ConnectivityMonitor,
        backend: BackendClient,
        drain_delay: Optional[float] = None,
        max_context_messages: Optional[int] = None,
    ):
        self._conversations = conversations
        self._queue = queue
        self._monitor = monitor
        self._backend = backend
        self._drain_delay = drain_delay if drain_delay is not None else settings.queue_drain_delay
        self._max_context = max_context_messages or settings.max_context_messages
        self._active: Dict[str, _Generation] = {}
        self._detached: Set[_Generation] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._drain_tasks: Dict[str, asyncio.Task] = {}
        self._drain_trigger: Optional[asyncio.Task] = None
        self._closed = False
        monitor.add_listener(self._on_connectivity_change)

    # ------------------------------------------------------------------
    # 发送
    # ------------------------------------------------------------------

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> Subscription[Conversation]:
        """发送一条用户消息，返回该会话快照的订阅。

        await 返回时用户消息（在线时还有流式占位消息）已经写入存储。
        离线时返回的订阅只包含排队后的快照，随即结束。
        """

        if not text or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="message text is empty")
        conv = self._conversations.get(conversation_id)
        if not conv.model_name:
            raise ValidationError(code="MISSING_MODEL", message="conversation has no model", conversation_id=conversation_id)

        async with self._lock(conversation_id):
            self._detach_active(conversation_id)
            if self._monitor.current_status != "connected":
                return await self._queue_new_message(conversation_id, text, attachments)

            user_msg = Message.user(text, attachments)
            conv = await self._conversations.add(user_msg, to=conversation_id)
            self._log("Stored user message", conversation_id, message_id=user_msg.id)
            try:
                _, sub = await self._open_generation(conv, user_msg, drain=False, subscribe=True)
            except AttachmentError:
                await self._conversations.update_message(conversation_id, user_msg.id, status="failed")
                raise
            return sub

    async def _queue_new_message(
        self,
        conversation_id: str,
        text: str,
        attachments: Optional[List[Attachment]],
    ) -> Subscription[Conversation]:
        user_msg = Message.user(text, attachments, status="queued")
        conv = await self._conversations.add(user_msg, to=conversation_id)
        try:
            await self._queue.enqueue(conversation_id, user_msg)
        except BusinessError as e:
            await self._conversations.update_message(
                conversation_id, user_msg.id, status="failed", error_message=e.message
            )
            raise
        self._log(
            "Queued message while offline",
            conversation_id,
            message_id=user_msg.id,
            connectivity=self._monitor.current_status,
        )
        channel: Broadcast[Conversation] = Broadcast()
        channel.publish(conv)
        channel.close()
        return channel.subscribe()

    # ------------------------------------------------------------------
    # 活跃生成
    # ------------------------------------------------------------------

    def get_active_stream(self, conversation_id: str) -> Optional[Subscription[Conversation]]:
        """重新挂载到进行中的生成：先收到当前快照，再收到后续快照，不会重新请求后端。"""

        gen = self._active.get(conversation_id)
        if gen is None:
            return None
        return gen.channel.subscribe(replay_latest=True)

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    async def cancel_generation(self, conversation_id: str) -> Optional[Conversation]:
        """中止活跃生成的后端请求，保留已生成的部分文本，所有观察者正常结束。"""

        async with self._lock(conversation_id):
            gen = self._active.pop(conversation_id, None)
            if gen is None:
                return None
            conv = await self._stop_generation(gen)
        self._log("Cancelled generation", conversation_id, partial_chars=len(gen.text))
        return conv

    async def _stop_generation(self, gen: _Generation) -> Optional[Conversation]:
        """中止后台任务并落盘部分文本。无论落盘是否成功，通道都会结束。"""

        conv: Optional[Conversation] = None
        try:
            if gen.task is not None and not gen.task.done():
                gen.task.cancel()
                await asyncio.wait({gen.task})
            conv = await self._conversations.update_message(
                gen.conversation_id,
                gen.assistant_message_id,
                text=gen.text or CANCELLED_TEXT,
                is_streaming=False,
            )
            if gen.drain:
                conv = await self._conversations.update_message(
                    gen.conversation_id, gen.user_message_id, status="normal"
                )
        except NotFoundError:
            # 会话或消息已被删除
            pass
        except Exception as e:
            logger.error(
                f"Failed to persist cancelled generation: {e}",
                extra={"extra": {
                    "conversation_id": gen.conversation_id,
                    "assistant_message_id": gen.assistant_message_id,
                    "error_code": getattr(e, "code", type(e).__name__),
                }},
            )
            gen.channel.fail(e)
            raise
        finally:
            if conv is not None:
                gen.channel.publish(conv)
            gen.channel.close()
        return conv

    async def _open_generation(
        self,
        conv: Conversation,
        user_msg: Message,
        drain: bool,
        subscribe: bool = False,
    ):
        """在会话锁内调用：插入占位消息、登记活跃生成并启动后台任务。"""

        request = self._build_request(conv, user_msg)
        placeholder = Message.assistant("", is_streaming=True)
        gen = _Generation(
            conversation_id=conv.id,
            user_message_id=user_msg.id,
            assistant_message_id=placeholder.id,
            drain=drain,
        )
        sub = gen.channel.subscribe() if subscribe else None
        gen.channel.publish(conv)
        conv = await self._conversations.add(placeholder, to=conv.id, after=user_msg.id if drain else None)
        gen.channel.publish(conv)
        self._active[conv.id] = gen
        gen.task = asyncio.create_task(self._run_generation(gen, request), name=f"generation-{conv.id}")
        self._log(
            "Opened generation",
            conv.id,
            user_message_id=user_msg.id,
            assistant_message_id=placeholder.id,
            drain=drain,
            context_messages=len(request.messages),
        )
        return gen, sub

    async def _run_generation(self, gen: _Generation, request: ChatRequest) -> None:
        cid = gen.conversation_id
        try:
            async with aclosing(self._backend.generate(request)) as stream:
                async for chunk in stream:
                    if chunk.delta:
                        gen.chunks.append(chunk.delta)
                        conv = await self._conversations.update_message(
                            cid, gen.assistant_message_id, text=gen.text, is_streaming=True
                        )
                        gen.channel.publish(conv)
                    if chunk.done:
                        break
            if not gen.text.strip():
                raise ApiError(
                    code="EMPTY_RESPONSE",
                    message="The model returned an empty response, try sending the message again.",
                    http_status=502,
                )
            conv = await self._conversations.update_message(
                cid, gen.assistant_message_id, text=gen.text, is_streaming=False
            )
            if gen.drain:
                conv = await self._conversations.update_message(cid, gen.user_message_id, status="normal")
            gen.channel.publish(conv)
            gen.channel.close()
            self._log(
                "Completed generation",
                cid,
                assistant_message_id=gen.assistant_message_id,
                chars=len(gen.text),
                elapsed_seconds=round(time.time() - gen.started_at, 2),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001 - 后端错误转交给所有观察者
            gen.error = e
            await self._fail_generation(gen, e)
        finally:
            self._release(gen)

    async def _fail_generation(self, gen: _Generation, error: BaseException) -> None:
        cid = gen.conversation_id
        reason = error.message if isinstance(error, BusinessError) else str(error)
        logger.error(
            f"Generation failed: {reason}",
            extra={"extra": {
                "conversation_id": cid,
                "assistant_message_id": gen.assistant_message_id,
                "drain": gen.drain,
                "error_code": getattr(error, "code", type(error).__name__),
            }},
        )
        try:
            if gen.drain:
                # 队列消息失败：用户消息标记 failed，去掉占位消息，等待用户重试
                await self._conversations.delete_message(cid, gen.assistant_message_id)
                conv = await self._conversations.update_message(
                    cid, gen.user_message_id, status="failed", error_message=reason
                )
            else:
                conv = await self._conversations.update_message(
                    cid,
                    gen.assistant_message_id,
                    text=f"Error: {reason}",
                    is_streaming=False,
                    is_error=True,
                    error_message=reason,
                )
        except BusinessError as store_error:
            logger.exception("Failed to persist generation failure")
            gen.channel.fail(store_error)
            return
        gen.channel.publish(conv)
        gen.channel.fail(error)

    def _detach_active(self, conversation_id: str) -> None:
        # 同一会话再次发送：旧生成的观察者被结束，但后端请求继续完成并落盘
        gen = self._active.pop(conversation_id, None)
        if gen is None:
            return
        gen.channel.close()
        self._detached.add(gen)
        self._log("Detached observers from previous generation", conversation_id, assistant_message_id=gen.assistant_message_id)

    def _release(self, gen: _Generation) -> None:
        if self._active.get(gen.conversation_id) is gen:
            del self._active[gen.conversation_id]
        self._detached.discard(gen)

    # ------------------------------------------------------------------
    # 失败重试 / 取消排队
    # ------------------------------------------------------------------

    async def retry_failed_message(self, message_id: str) -> Conversation:
        """把失败的用户消息重新放回队列并走同一条发送路径，不会新增重复消息。"""

        conv, _ = self._conversations.find_message(message_id)
        cid = conv.id
        async with self._lock(cid):
            # 在锁内重新读取，避免与并发的重试或取消交错
            _, msg = self._conversations.find_message(message_id)
            if msg.role != "user" or msg.status != "failed":
                raise ValidationError(
                    code="MESSAGE_NOT_RETRYABLE",
                    message=f"only failed user messages can be retried (status={msg.status}, role={msg.role})",
                )
            conv = await self._conversations.update_message(cid, message_id, status="queued", error_message=None)
            try:
                await self._queue.enqueue(cid, conv.find_message(message_id))
            except BusinessError as e:
                await self._conversations.update_message(cid, message_id, status="failed", error_message=e.message)
                raise
        self._log("Retrying failed message", cid, message_id=message_id)
        if self._monitor.is_online:
            self._ensure_drain(cid)
        return conv

    async def cancel_queued_message(self, message_id: str) -> Optional[Conversation]:
        """从队列中取消一条消息；消息本身标记为 failed 而不是直接消失。幂等。

        与队列发送共用会话锁：如果消息已经被取出并开始发送（status=sending），
        取消不生效，消息按正常流程完成。
        """

        try:
            conv, _ = self._conversations.find_message(message_id)
        except NotFoundError:
            await self._queue.cancel(message_id)
            return None
        cid = conv.id
        async with self._lock(cid):
            removed = await self._queue.cancel(message_id)
            try:
                conv, msg = self._conversations.find_message(message_id)
            except NotFoundError:
                return None
            # 锁内 status=queued 时，记录要么刚被移除，要么本就丢失，两种情况都应标记失败
            if msg.status == "queued":
                conv = await self._conversations.update_message(
                    cid, message_id, status="failed", error_message="Cancelled before sending"
                )
        self._log("Cancel queued message", cid, message_id=message_id, removed=removed, status=msg.status)
        return conv

    # ------------------------------------------------------------------
    # 队列发送
    # ------------------------------------------------------------------

    def _on_connectivity_change(self, old: ConnectivityStatus, new: ConnectivityStatus) -> None:
        if new != "connected" or self._closed:
            return
        if self._drain_trigger is not None and not self._drain_trigger.done():
            return
        self._drain_trigger = asyncio.create_task(self._delayed_drain(self._drain_delay), name="queue-drain-trigger")

    async def _delayed_drain(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if not self._monitor.is_online:
            logger.info("Connection not stable, skipped queue drain")
            return
        self._start_drains()

    def _start_drains(self) -> List[asyncio.Task]:
        return [self._ensure_drain(cid) for cid in self._queue.conversations_with_items()]

    async def drain_queue(self) -> Dict[str, DrainOutcome]:
        """立即发送所有会话的排队消息并等待结束，返回每个会话的结束原因。"""

        if not self._monitor.is_online:
            return {}
        tasks = {cid: self._ensure_drain(cid) for cid in self._queue.conversations_with_items()}
        if tasks:
            await asyncio.wait(set(tasks.values()))
        outcomes: Dict[str, DrainOutcome] = {}
        for cid, task in tasks.items():
            if task.cancelled():
                outcomes[cid] = "closed"
            elif task.exception() is not None:
                # 异常已在 _on_drain_done 中记录
                outcomes[cid] = "failed"
            else:
                outcomes[cid] = task.result()
        return outcomes

    def _ensure_drain(self, conversation_id: str) -> asyncio.Task:
        task = self._drain_tasks.get(conversation_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._drain_conversation(conversation_id), name=f"drain-{conversation_id}")
        self._drain_tasks[conversation_id] = task
        task.add_done_callback(partial(self._on_drain_done, conversation_id))
        return task

    def _on_drain_done(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._drain_tasks.get(conversation_id) is task:
            del self._drain_tasks[conversation_id]
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error(
                f"Queue drain crashed: {task.exception()!r}",
                extra={"extra": {"conversation_id": conversation_id}},
            )
            return
        # 发送期间又有新消息入队
        if task.result() == "empty" and self._monitor.is_online and self._queue.count_for(conversation_id):
            self._ensure_drain(conversation_id)

    async def _drain_conversation(self, conversation_id: str) -> DrainOutcome:
        delivered = 0
        while True:
            if self._closed:
                return "closed"
            if not self._monitor.is_online:
                self._log("Lost connection, stopped draining", conversation_id, delivered=delivered)
                return "offline"
            await self._wait_for_active(conversation_id)
            async with self._lock(conversation_id):
                if conversation_id in self._active:
                    continue
                item = await self._queue.dequeue_next(conversation_id)
                if item is None:
                    self._log("Queue drained", conversation_id, delivered=delivered)
                    return "empty"
                try:
                    conv = self._conversations.get(conversation_id)
                except NotFoundError:
                    await self._queue.clear_conversation(conversation_id)
                    return "empty"
                msg = conv.find_message(item.message_id)
                if msg is None or msg.status != "queued":
                    self._log("Skipped stale queue item", conversation_id, queue_item_id=item.id)
                    continue
                conv = await self._conversations.update_message(conversation_id, msg.id, status="sending")
                msg = conv.find_message(msg.id)
                try:
                    gen, _ = await self._open_generation(conv, msg, drain=True)
                except AttachmentError as e:
                    # 附件错误只影响这一条消息，继续发送后面的
                    await self._conversations.update_message(
                        conversation_id, msg.id, status="failed", error_message=e.message
                    )
                    continue
            await asyncio.wait({gen.task})
            if gen.error is not None:
                self._log("Stopped draining after failure", conversation_id, message_id=msg.id)
                return "failed"
            delivered += 1

    async def _wait_for_active(self, conversation_id: str) -> None:
        while True:
            gen = self._active.get(conversation_id)
            if gen is None or gen.task is None:
                return
            await asyncio.wait({gen.task})

    # ------------------------------------------------------------------
    # 会话级联操作
    # ------------------------------------------------------------------

    async def clear_conversation(self, conversation_id: str) -> Conversation:
        await self.cancel_generation(conversation_id)
        async with self._lock(conversation_id):
            await self._queue.clear_conversation(conversation_id)
            return await self._conversations.clear(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.cancel_generation(conversation_id)
        async with self._lock(conversation_id):
            await self._queue.clear_conversation(conversation_id)
            await self._conversations.delete(conversation_id)
        self._locks.pop(conversation_id, None)

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """等待所有排队发送与生成任务结束。"""

        while True:
            pending = [t for t in self._pending_tasks() if not t.done()]
            if not pending:
                return
            await asyncio.wait(pending)

    async def close(self) -> None:
        self._closed = True
        self._monitor.remove_listener(self._on_connectivity_change)
        background = [t for t in [self._drain_trigger, *self._drain_tasks.values()] if t is not None]
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        errors: List[Exception] = []
        for gen in [*self._active.values(), *self._detached]:
            try:
                await self._stop_generation(gen)
            except Exception as e:  # noqa: BLE001 - 继续停止其余生成，结束后再抛出
                errors.append(e)
        self._active.clear()
        self._detached.clear()
        if errors:
            raise errors[0]

    async def reconcile(self) -> Dict[str, int]:
        """启动时修复消息状态与队列之间的不一致。

        上次进程可能在两次落盘之间退出（例如记录已出队但消息还没标记为 sending），
        这里把没有队列记录的 queued 消息标记为 failed（用户可重试），
        并移除指向不存在或已不是 queued 消息的队列记录。
        """

        queued_ids = {item.message_id for item in self._queue.items()}
        orphaned = 0
        for conv in self._conversations.list():
            async with self._lock(conv.id):
                for m in conv.messages:
                    if m.status == "queued" and m.id not in queued_ids:
                        await self._conversations.update_message(
                            conv.id, m.id, status="failed", error_message="Lost from the queue, retry to send"
                        )
                        orphaned += 1
        stale = 0
        for item in self._queue.items():
            try:
                _, msg = self._conversations.find_message(item.message_id)
            except NotFoundError:
                msg = None
            if msg is None or msg.status != "queued":
                await self._queue.cancel(item.message_id)
                stale += 1
        if orphaned or stale:
            logger.warning(
                "Reconciled queue with conversation store",
                extra={"extra": {"orphaned_messages": orphaned, "stale_queue_items": stale}},
            )
        return {"orphaned_messages": orphaned, "stale_queue_items": stale}

    def _pending_tasks(self) -> List[asyncio.Task]:
        tasks: List[asyncio.Task] = []
        if self._drain_trigger is not None:
            tasks.append(self._drain_trigger)
        tasks.extend(self._drain_tasks.values())
        tasks.extend(g.task for g in [*self._active.values(), *self._detached] if g.task is not None)
        return tasks

    # ------------------------------------------------------------------
    # 辅助方法
    # ------------------------------------------------------------------

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def _build_request(self, conv: Conversation, target: Message) -> ChatRequest:
        """构造生成请求：系统提示词 + 截止到 target 的有效历史。"""

        history: List[ChatMessage] = []
        for m in conv.messages:
            if m.id == target.id:
                history.append(self._to_chat_message(m))
                break
            if m.is_error or m.is_streaming or not m.text.strip():
                continue
            if m.role == "assistant" and m.text == CANCELLED_TEXT:
                continue
            if m.role == "user" and m.status != "normal":
                continue
            history.append(self._to_chat_message(m))
        if len(history) > self._max_context:
            self._log("Truncated context", conv.id, max_context=self._max_context, trimmed=len(history) - self._max_context)
            history = history[-self._max_context:]
        messages: List[ChatMessage] = []
        if conv.system_prompt:
            messages.append(ChatMessage(role="system", content=conv.system_prompt))
        messages.extend(history)
        params = conv.parameters
        return ChatRequest(
            model=conv.model_name,
            messages=messages,
            temperature=params.temperature,
            top_k=params.top_k,
            top_p=params.top_p,
            max_tokens=params.max_tokens,
        )

    @staticmethod
    def _to_chat_message(message: Message) -> ChatMessage:
        content = message.text
        images: List[str] = []
        for att in message.attachments:
            if att.is_image:
                images.append(base64.b64encode(att.data).decode("ascii"))
            elif att.is_text_file:
                try:
                    file_text = att.data.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise AttachmentError(
                        code="ATTACHMENT_ENCODING_ERROR",
                        message=f"attachment {att.name} is not valid UTF-8: {e}",
                        message_id=message.id,
                    )
                content += f"\n\n--- File: {att.name} ---\n{file_text}\n--- End of {att.name} ---"
        return ChatMessage(role=message.role, content=content, images=images or None)

    def _log(self, msg: str, conversation_id: str, **fields) -> None:
        logger.info(msg, extra={"extra": {"conversation_id": conversation_id, **fields}})
