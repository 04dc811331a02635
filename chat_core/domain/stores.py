from typing import AsyncIterator, List, Optional, Protocol, Tuple

from .models import Conversation, GenerationParameters, Message, QueuedMessageItem


class ConversationStore(Protocol):
    async def create(
        self,
        model_name: str,
        title: Optional[str] = None,
        system_prompt: Optional[str] = None,
        parameters: Optional[GenerationParameters] = None,
        tool_calling_enabled: bool = False,
    ) -> Conversation:
        ...

    def get(self, conversation_id: str) -> Conversation:
        ...

    def list(self) -> List[Conversation]:
        ...

    def find_message(self, message_id: str) -> Tuple[Conversation, Message]:
        ...

    async def add(self, message: Message, to: str, after: Optional[str] = None) -> Conversation:
        ...

    async def update(self, conversation: Conversation) -> Conversation:
        ...

    async def update_message(self, conversation_id: str, message_id: str, **changes) -> Conversation:
        ...

    async def delete_message(self, conversation_id: str, message_id: str) -> Conversation:
        ...

    async def clear(self, conversation_id: str) -> Conversation:
        ...

    async def delete(self, conversation_id: str) -> None:
        ...


class MessageQueueStore(Protocol):
    async def enqueue(self, conversation_id: str, message: Message) -> QueuedMessageItem:
        ...

    async def cancel(self, message_id: str) -> bool:
        ...

    async def dequeue_next(self, conversation_id: str) -> Optional[QueuedMessageItem]:
        ...

    async def clear_conversation(self, conversation_id: str) -> int:
        ...

    def count_for(self, conversation_id: str) -> int:
        ...

    def items(self, conversation_id: Optional[str] = None) -> List[QueuedMessageItem]:
        ...

    def contains(self, message_id: str) -> bool:
        ...

    def conversations_with_items(self) -> List[str]:
        ...

    def queue_updates(self) -> AsyncIterator[List[QueuedMessageItem]]:
        ...
