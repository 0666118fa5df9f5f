from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from datetime import timedelta
from typing import Callable, Iterable, Iterator, Tuple, TypeVar

from .bridge import CallbackSlot, emit_full, emit_timestamped, receive_trampoline
from .cal import to_millis
from .endpoint import TopicEndpoint
from .engine import WAIT_FOREVER, BusEngine, ReceiveCallback, ReceiveCallbackData
from .errors import InvalidFormat, SubscriberCreationFailed, Timeout
from .formats.base import Format

logger = logging.getLogger("calbus.subscriber")

T = TypeVar("T")

ReceiveData = ReceiveCallbackData


class Subscriber(TopicEndpoint[T]):
    """
    类型化订阅者，支持三种接收方式：

    - recv(): 阻塞直到收到一条消息
    - try_recv(timeout): 最多等待 timeout，超时或解码失败返回 None
    - on_recv(callback) / on_recv_full(callback): 总线在自己的线程上回调
    """

    kind = "subscriber"

    def __init__(self, topic_name: str, fmt: Format[T], *, engine: BusEngine | None = None) -> None:
        super().__init__(topic_name, fmt, engine)
        self._recv_slot: CallbackSlot | None = None
        topic_type, description = self._native_type_info()
        handle = self._engine.sub_new()
        if not self._engine.sub_create(handle, self.topic_name, topic_type, description):
            self._engine.sub_destroy(handle)
            raise SubscriberCreationFailed(topic_name)
        self._handle = handle

    def set_id(self, ids: Iterable[int]) -> bool:
        """只接收指定发布者 id 的消息，传入空集合取消过滤。"""
        if self._handle is None:
            return False
        return self._engine.sub_set_id(self._handle, ids)

    @contextlib.contextmanager
    def _received_buffer(self, timeout_ms: int) -> Iterator[Tuple[memoryview | None, int, int]]:
        """向总线取一条消息，退出时无论成功与否都归还缓冲区。"""
        if self._handle is None:
            yield None, 0, 0
            return
        buf, size, timestamp = self._engine.sub_receive(self._handle, timeout_ms)
        try:
            yield buf, size, timestamp
        finally:
            if buf is not None:
                logger.debug("Freeing recv buffer")
                self._engine.free_mem(buf)

    def _recv(self, timeout_ms: int) -> T:
        with self._received_buffer(timeout_ms) as (buf, _size, _timestamp):
            if buf is not None:
                try:
                    return self.format.deserialize(buf)
                except Exception as exc:
                    logger.error(f"Failed to decode message on '{self.topic_name}': {exc}")
                    raise InvalidFormat(self.topic_name, exc) from exc
        logger.debug(f"Subscriber timeout on '{self.topic_name}'")
        raise Timeout(self.topic_name, timeout_ms)

    def recv(self) -> T:
        """阻塞接收。总线没有给出消息时抛出 Timeout，解码失败抛出 InvalidFormat。"""
        logger.debug("Subscriber.recv")
        return self._recv(WAIT_FOREVER)

    def try_recv(self, timeout: float | timedelta = 0.0) -> T | None:
        """
        最多等待 timeout（秒或 timedelta），0 表示只检查一次。

        超时与解码失败都返回 None；解码失败会记录日志。
        """
        logger.debug("Subscriber.try_recv")
        try:
            return self._recv(to_millis(timeout))
        except (Timeout, InvalidFormat):
            return None

    async def try_recv_async(self, timeout: float | timedelta = 0.0) -> T | None:
        return await asyncio.to_thread(self.try_recv, timeout)

    async def recv_async(self, poll_interval: float = 0.1) -> T:
        """
        异步阻塞接收。工作线程只按 poll_interval 分段等待消息到达，取消时会被立即唤醒；
        消息在事件循环中取出并解码，因此取消不会丢失消息。

        订阅者已关闭或总线已终止时抛出 Timeout。
        """
        slice_ms = max(1, to_millis(poll_interval))
        while True:
            handle = self._handle
            if handle is None or not self._engine.process_is_ok():
                raise Timeout(self.topic_name, WAIT_FOREVER)
            interrupt = threading.Event()
            try:
                ready = await asyncio.to_thread(self._engine.sub_poll, handle, slice_ms, interrupt)
            except asyncio.CancelledError:
                self._engine.sub_interrupt(handle, interrupt)
                raise
            if ready is None:
                raise Timeout(self.topic_name, WAIT_FOREVER)
            if ready:
                try:
                    return self._recv(0)
                except Timeout:
                    # 消息已被其他接收方取走
                    continue

    def on_recv(self, callback: Callable[[int, T], None]) -> bool:
        """注册接收回调 callback(timestamp_us, message)，替换已有回调。"""
        return self._register_receive(receive_trampoline(self.format, emit_timestamped), callback)

    def on_recv_full(self, callback: Callable[[ReceiveData, T], None]) -> bool:
        """同 on_recv，但传入完整的接收数据（原始缓冲区、大小、发布者 id、时间、计数）。"""
        return self._register_receive(receive_trampoline(self.format, emit_full), callback)

    def remove_receive_callback(self) -> bool:
        """注销接收回调；返回后回调不会再被调用。"""
        if self._handle is None:
            return False
        removed = self._engine.sub_rem_receive_callback(self._handle)
        self._retire_slot()
        return removed

    def _register_receive(self, trampoline: ReceiveCallback, callback: Callable[..., None]) -> bool:
        if self._handle is None:
            return False
        slot = CallbackSlot(callback)
        if not self._engine.sub_add_receive_callback(self._handle, trampoline, slot):
            return False
        self._retire_slot()
        self._recv_slot = slot
        return True

    def _retire_slot(self) -> None:
        slot, self._recv_slot = self._recv_slot, None
        if slot is not None:
            slot.retire()

    def _release(self, handle: int) -> None:
        self._engine.sub_rem_receive_callback(handle)
        self._retire_slot()
        self._engine.sub_destroy(handle)


__all__ = ["ReceiveData", "Subscriber"]
