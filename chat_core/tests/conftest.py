import asyncio
from types import SimpleNamespace
from typing import List, Optional

import pytest

from chat_core.domain.models import ChatRequest, ChatStreamChunk
from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.infrastructure.storage.queue_store import JsonMessageQueueStore
from chat_core.services.connectivity import ConnectivityMonitor
from chat_core.services.coordinator import StreamingDeliveryCoordinator


class FakeBackend:
    """可控的后端桩：记录请求、按需失败、可以在首个增量后挂起等待放行。"""

    name = "fake"

    def __init__(self, chunks: Optional[List[str]] = None, online: bool = True):
        self.chunks = chunks if chunks is not None else ["Hel", "lo", " there"]
        self.online = online
        self.calls: List[ChatRequest] = []
        self.cancelled = 0
        self.fail_with: Optional[Exception] = None
        self.fail_after = 0
        self.fail_on_call: Optional[int] = None
        self.gate: Optional[asyncio.Event] = None

    async def test_connection(self) -> bool:
        return self.online

    async def generate(self, req: ChatRequest):
        self.calls.append(req)
        call_no = len(self.calls)
        try:
            for i, piece in enumerate(self.chunks):
                if self.fail_with is not None and i == self.fail_after and self.fail_on_call in (None, call_no):
                    raise self.fail_with
                yield ChatStreamChunk(backend=self.name, model=req.model, delta=piece)
                if self.gate is not None:
                    await self.gate.wait()
        except (asyncio.CancelledError, GeneratorExit):
            self.cancelled += 1
            raise
        yield ChatStreamChunk(backend=self.name, model=req.model, delta="", done=True)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_backend():
    return FakeBackend


@pytest.fixture
def make_env(tmp_path):
    async def _make(backend: FakeBackend, online: bool = True, max_queue_size: int = 50):
        backend.online = online
        conversations = JsonConversationStore(root=tmp_path / ".storage")
        queue = JsonMessageQueueStore(root=tmp_path / ".storage", max_size=max_queue_size)
        monitor = ConnectivityMonitor(backend, poll_interval=3600, probe_timeout=1)
        await monitor.refresh()
        coordinator = StreamingDeliveryCoordinator(
            conversations, queue, monitor, backend, drain_delay=0, max_context_messages=50
        )
        conv = await conversations.create(model_name="llama3.2", system_prompt="be brief")
        return SimpleNamespace(
            backend=backend,
            conversations=conversations,
            queue=queue,
            monitor=monitor,
            coordinator=coordinator,
            conv=conv,
        )

    return _make


def assert_queue_in_lockstep(conversations, queue) -> None:
    """队列中的记录与 status=queued 的消息必须一一对应。"""

    queued_ids = {
        m.id for c in conversations.list() for m in c.messages if m.status == "queued"
    }
    in_queue = {item.message_id for item in queue.items()}
    assert queued_ids == in_queue


@pytest.fixture
def lockstep():
    return assert_queue_in_lockstep
