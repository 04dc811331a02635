"""后端连通性监控。

ConnectivityMonitor 是一个“预言机”而不是传输层：它周期性（或在 refresh()
被调用时）探测当前配置的后端是否可达，并把结果以状态流的形式发布出去。
探测失败、超时都会被记录并映射为 offline，监控器本身从不向调用方抛异常。

状态机：checking -> connected | offline，之后只在 connected 与 offline 之间切换；
checking 只出现在第一次探测完成之前。
"""

import asyncio
from typing import Callable, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.models import ConnectivityStatus
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import BackendClient
from chat_core.services.broadcast import Broadcast, Subscription

StatusListener = Callable[[ConnectivityStatus, ConnectivityStatus], None]


class ConnectivityMonitor:
    def __init__(
        self,
        backend: BackendClient,
        poll_interval: Optional[float] = None,
        probe_timeout: Optional[float] = None,
    ):
        self._backend = backend
        self._poll_interval = poll_interval if poll_interval is not None else settings.connectivity_poll_interval
        self._probe_timeout = probe_timeout if probe_timeout is not None else settings.connection_test_timeout
        self._status: ConnectivityStatus = "checking"
        self._channel: Broadcast[ConnectivityStatus] = Broadcast()
        self._channel.publish(self._status)
        self._listeners: List[StatusListener] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._probe_tasks: set[asyncio.Task] = set()
        self._probe_lock = asyncio.Lock()
        self._stopped = False

    @property
    def current_status(self) -> ConnectivityStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status == "connected"

    @property
    def is_offline(self) -> bool:
        return self._status == "offline"

    def status_stream(self) -> Subscription[ConnectivityStatus]:
        """订阅状态变化：先立即收到当前状态，之后只收到状态切换。"""

        return self._channel.subscribe(replay_latest=True)

    def add_listener(self, listener: StatusListener) -> None:
        """注册同步回调 listener(old, new)，在每次状态切换时调用。"""

        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def start(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._stopped = False
            self._poll_task = asyncio.create_task(self._poll_loop(), name="connectivity-poll")

    async def stop(self) -> None:
        self._stopped = True
        tasks = [t for t in [self._poll_task, *self._probe_tasks] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._channel.close()

    def refresh(self) -> asyncio.Task:
        """立即发起一次探测，不阻塞调用方；结果若改变状态，会通过状态流发布。

        返回探测任务，需要等结果的调用方可以 await 它。
        """

        logger.info("Manual connectivity refresh requested")
        task = asyncio.create_task(self._probe(), name="connectivity-probe")
        self._probe_tasks.add(task)
        task.add_done_callback(self._probe_tasks.discard)
        return task

    async def _poll_loop(self) -> None:
        while not self._stopped:
            await self._probe()
            await asyncio.sleep(self._poll_interval)

    async def _probe(self) -> ConnectivityStatus:
        async with self._probe_lock:
            try:
                reachable = await asyncio.wait_for(self._backend.test_connection(), timeout=self._probe_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001 - 探测失败一律视为离线
                logger.warning(
                    "Connectivity probe failed",
                    extra={"extra": {"backend": getattr(self._backend, "name", "?"), "error": repr(e)}},
                )
                reachable = False
            self._update_status("connected" if reachable else "offline")
            return self._status

    def _update_status(self, new_status: ConnectivityStatus) -> None:
        if new_status == self._status or self._channel.closed:
            return
        old_status = self._status
        self._status = new_status
        logger.info(
            "Connectivity status changed",
            extra={"extra": {"from": old_status, "to": new_status}},
        )
        self._channel.publish(new_status)
        for listener in list(self._listeners):
            try:
                listener(old_status, new_status)
            except Exception:  # noqa: BLE001 - 单个监听者出错不影响其他监听者
                logger.exception("Connectivity listener failed")
