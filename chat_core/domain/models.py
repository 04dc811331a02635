"""统一的会话、消息与后端请求数据模型。

本模块定义了核心层内部共享的标准数据结构：

- Conversation / Message / Attachment: 持久化的会话快照及其消息。
- QueuedMessageItem: 离线队列中的一条待发送记录。
- ChatMessage / ChatRequest / ChatStreamChunk: 发给后端（Ollama、LiteLLM）
  的请求模型以及流式增量结果。

所有后端适配器（如 OllamaClient）都只依赖 ChatRequest / ChatStreamChunk，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4


# 消息角色
Role = Literal["system", "user", "assistant"]

# 消息投递状态：
# - normal: 已正常发送（或助手消息）
# - queued: 离线时已接收，等待连接恢复后发送
# - sending: 队列消息正在发送（生成进行中）
# - failed: 发送失败，可由用户重试
MessageStatus = Literal["normal", "queued", "sending", "failed"]

# 后端连接状态，checking 只出现在第一次探测完成之前
ConnectivityStatus = Literal["checking", "connected", "offline"]

DEFAULT_TITLE = "New Conversation"
CANCELLED_TEXT = "[Generation cancelled]"


def new_id(prefix: str) -> str:
    """生成带前缀的唯一 id（uuid4），不依赖时钟，避免快速连发时碰撞。"""

    return f"{prefix}-{uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class GenerationParameters:
    """采样参数。None 表示交给后端使用默认值。"""

    temperature: Optional[float] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GenerationParameters":
        data = data or {}
        return cls(
            temperature=data.get("temperature"),
            top_k=data.get("top_k"),
            top_p=data.get("top_p"),
            max_tokens=data.get("max_tokens"),
        )


@dataclass
class Attachment:
    """消息附件（图片或文件）。"""

    id: str
    name: str
    mime_type: str
    data: bytes
    size: int = 0

    def __post_init__(self) -> None:
        if not self.size:
            self.size = len(self.data)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_text_file(self) -> bool:
        return not self.is_image and (
            self.mime_type.startswith("text/") or self.mime_type == "application/json"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "mime_type": self.mime_type,
            "data": base64.b64encode(self.data).decode("ascii"),
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            mime_type=data.get("mime_type") or "application/octet-stream",
            data=base64.b64decode(data.get("data") or ""),
            size=int(data.get("size") or 0),
        )


@dataclass
class Message:
    """会话中的一条消息，只属于一个 Conversation。

    - status: 投递状态，见 MessageStatus。
    - is_streaming: 助手消息仍在生成中。
    - is_error: 生成失败时的错误占位消息，不会进入后续请求上下文。
    """

    id: str
    text: str
    role: Role
    timestamp: datetime
    attachments: List[Attachment] = field(default_factory=list)
    status: MessageStatus = "normal"
    is_streaming: bool = False
    is_error: bool = False
    error_message: Optional[str] = None

    @classmethod
    def user(cls, text: str, attachments: Optional[List[Attachment]] = None, status: MessageStatus = "normal") -> "Message":
        return cls(
            id=new_id("m"),
            text=text,
            role="user",
            timestamp=utcnow(),
            attachments=list(attachments or []),
            status=status,
        )

    @classmethod
    def assistant(cls, text: str = "", is_streaming: bool = False) -> "Message":
        return cls(id=new_id("m"), text=text, role="assistant", timestamp=utcnow(), is_streaming=is_streaming)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "role": self.role,
            "timestamp": format_ts(self.timestamp),
            "attachments": [a.to_dict() for a in self.attachments],
            "status": self.status,
            "is_streaming": self.is_streaming,
            "is_error": self.is_error,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            text=data.get("text") or "",
            role=data.get("role") or "user",
            timestamp=parse_ts(data["timestamp"]),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or []],
            status=data.get("status") or "normal",
            is_streaming=bool(data.get("is_streaming", False)),
            is_error=bool(data.get("is_error", False)),
            error_message=data.get("error_message"),
        )


@dataclass
class Conversation:
    """会话快照。messages 的顺序即显示顺序，没有额外的序号字段。"""

    id: str
    title: str
    model_name: str
    created_at: datetime
    updated_at: datetime
    messages: List[Message] = field(default_factory=list)
    system_prompt: Optional[str] = None
    parameters: GenerationParameters = field(default_factory=GenerationParameters)
    tool_calling_enabled: bool = False

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def last_message_preview(self) -> str:
        if not self.messages:
            return "No messages yet"
        text = self.messages[-1].text
        if len(text) > 50:
            return text[:50] + "..."
        return text

    def find_message(self, message_id: str) -> Optional[Message]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None

    def index_of(self, message_id: str) -> int:
        for i, m in enumerate(self.messages):
            if m.id == message_id:
                return i
        return -1

    @staticmethod
    def generate_title(first_message: str) -> str:
        cleaned = first_message.strip()
        if len(cleaned) <= 40:
            return cleaned
        return cleaned[:40] + "..."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model_name": self.model_name,
            "created_at": format_ts(self.created_at),
            "updated_at": format_ts(self.updated_at),
            "messages": [m.to_dict() for m in self.messages],
            "system_prompt": self.system_prompt,
            "parameters": self.parameters.to_dict(),
            "tool_calling_enabled": self.tool_calling_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            model_name=data.get("model_name") or "",
            created_at=parse_ts(data["created_at"]),
            updated_at=parse_ts(data["updated_at"]),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            system_prompt=data.get("system_prompt"),
            parameters=GenerationParameters.from_dict(data.get("parameters")),
            tool_calling_enabled=bool(data.get("tool_calling_enabled", False)),
        )


@dataclass
class QueuedMessageItem:
    """离线队列中的一条记录，对应会话里一条 status=queued 的用户消息。"""

    id: str
    conversation_id: str
    message_id: str
    enqueued_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "enqueued_at": format_ts(self.enqueued_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedMessageItem":
        return cls(
            id=data["id"],
            conversation_id=data["conversation_id"],
            message_id=data["message_id"],
            enqueued_at=parse_ts(data["enqueued_at"]),
        )


# ---- 后端请求模型 ----


@dataclass
class ChatMessage:
    """发给后端的一条上下文消息。

    - content: 文本内容（文本附件已内联）。
    - images: base64 编码的图片附件，供多模态模型使用。
    """

    role: Role
    content: str
    images: Optional[List[str]] = None


@dataclass
class ChatRequest:
    """一次完整的生成请求，由协调器根据会话快照构造。"""

    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class ChatUsage:
    """后端返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatStreamChunk:
    """流式生成的一次增量。

    - delta: 本次新增的文本。
    - done: 后端声明生成已结束。
    - raw: 原始响应 JSON，用于调试。
    """

    backend: str
    model: str
    delta: str
    done: bool = False
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None
