"""
回调桥：把总线在任意线程上发起的无类型回调，转换为对用户类型化闭包的调用。

总线只看到一个 trampoline 函数和一个不透明的上下文（CallbackSlot）。闭包的生命周期
由 slot 的 alive 标志约束：拥有者先向总线注销回调（总线保证返回后不再有调用在执行），
再 retire slot；之后迟到的调用只会变成一次记录日志的空操作。
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, TypeVar

from .engine import EventCallback, PublisherEventData, ReceiveCallback, ReceiveCallbackData
from .formats.base import Format

logger = logging.getLogger("calbus.bridge")

T = TypeVar("T")

Emit = Callable[["CallbackSlot", ReceiveCallbackData, Any], None]


class CallbackSlot:
    """持有用户闭包的存储单元。"""

    def __init__(self, func: Callable[..., Any], name: str | None = None) -> None:
        self._func = func
        self._lock = threading.RLock()
        self._alive = True
        self.name = name or getattr(func, "__name__", repr(func))
        self.calls = 0

    @property
    def alive(self) -> bool:
        return self._alive

    def invoke(self, *args: Any) -> bool:
        """在 slot 存活时调用闭包，返回是否真的调用了。闭包抛出的异常只记录日志。"""
        with self._lock:
            if not self._alive:
                logger.debug(f"回调 {self.name} 已失效，忽略本次调用")
                return False
            try:
                self._func(*args)
            except Exception:
                logger.exception(f"回调 {self.name} 执行失败")
            self.calls += 1
            return True

    def retire(self) -> None:
        """使 slot 失效；若闭包正在其他线程执行，会等待其结束。"""
        with self._lock:
            self._alive = False

    def __repr__(self) -> str:
        return f"CallbackSlot({self.name!r}, alive={self._alive})"


def receive_trampoline(fmt: Format[T], emit: Emit) -> ReceiveCallback:
    """生成交给总线的接收回调：解码成功才调用 emit，解码失败则丢弃这条消息。"""

    def trampoline(topic_name: str, data: ReceiveCallbackData, ctx: Any) -> None:
        slot: CallbackSlot = ctx
        try:
            value = fmt.deserialize(data.buf)
        except Exception as exc:
            logger.error(f"Failed to decode message on '{topic_name}': {exc}")
            return
        logger.debug(f"Received {data.size} bytes on '{topic_name}'")
        emit(slot, data, value)

    return trampoline


def emit_timestamped(slot: CallbackSlot, data: ReceiveCallbackData, value: Any) -> None:
    slot.invoke(data.time, value)


def emit_full(slot: CallbackSlot, data: ReceiveCallbackData, value: Any) -> None:
    slot.invoke(data, value)


def event_trampoline() -> EventCallback:
    def trampoline(topic_name: str, data: PublisherEventData, ctx: Any) -> None:
        slot: CallbackSlot = ctx
        logger.debug(f"Publisher event {data.type.name} on '{topic_name}'")
        slot.invoke(data)

    return trampoline


__all__ = [
    "CallbackSlot",
    "emit_full",
    "emit_timestamped",
    "event_trampoline",
    "receive_trampoline",
]
