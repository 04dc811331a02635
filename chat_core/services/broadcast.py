"""多订阅者广播通道。

一个 Broadcast 对应一个发布方（例如一次生成、连接状态、队列快照），
可以被任意多个 Subscription 订阅：

- 每个订阅者拥有自己的缓冲队列，取消订阅只影响自己，不影响发布方与其他订阅者。
- 通道缓存最后一次发布的值，晚到的订阅者会先收到这个当前值，再收到后续事件，
  不会从头重放。
- close() 让所有订阅者正常结束；fail(exc) 让所有订阅者在读完已缓冲事件后收到异常。
"""

import asyncio
from typing import Any, Generic, List, Optional, TypeVar

T = TypeVar("T")

_CLOSE = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class Subscription(Generic[T]):
    """一个观察者对 Broadcast 的订阅，同时也是异步迭代器。"""

    def __init__(self, channel: "Broadcast[T]"):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False
        self._cancelled = False

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSE:
            self._finish()
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finish()
            raise item.error
        return item

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """取消本订阅。只解除本观察者，不会结束发布方。"""

        if self._done or self._cancelled:
            return
        self._cancelled = True
        self._channel._detach(self)
        # 唤醒可能正阻塞在 __anext__ 上的读取方
        self._queue.put_nowait(_CLOSE)

    async def aclose(self) -> None:
        self.cancel()

    async def collect(self) -> List[T]:
        """读完整个订阅并返回所有事件，主要用于测试和一次性消费。"""

        return [item async for item in self]

    def _push(self, item: Any) -> None:
        if not self._cancelled:
            self._queue.put_nowait(item)

    def _finish(self) -> None:
        self._done = True
        self._channel._detach(self)


class Broadcast(Generic[T]):
    """带“最后快照缓存”的扇出通道。"""

    def __init__(self) -> None:
        self._subscribers: List[Subscription[T]] = []
        self._latest: Optional[T] = None
        self._has_latest = False
        self._closed = False
        self._error: Optional[BaseException] = None

    @property
    def latest(self) -> Optional[T]:
        return self._latest

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, value: T) -> None:
        if self._closed:
            return
        self._latest = value
        self._has_latest = True
        for sub in list(self._subscribers):
            sub._push(value)

    def subscribe(self, replay_latest: bool = True) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self)
        if replay_latest and self._has_latest:
            sub._push(self._latest)
        if self._closed:
            sub._push(_Failure(self._error) if self._error is not None else _CLOSE)
        else:
            self._subscribers.append(sub)
        return sub

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sub in list(self._subscribers):
            sub._push(_CLOSE)
        self._subscribers.clear()

    def fail(self, error: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        for sub in list(self._subscribers):
            sub._push(_Failure(error))
        self._subscribers.clear()

    def _detach(self, sub: Subscription[T]) -> None:
        try:
            self._subscribers.remove(sub)
        except ValueError:
            pass
