from __future__ import annotations

import enum
import logging
from typing import Callable, Dict, TypeVar

from .bridge import CallbackSlot, event_trampoline
from .endpoint import TopicEndpoint
from .engine import BusEngine, PublisherEventData, PublisherEventType
from .errors import PublisherCreationFailed, PublishFailed
from .formats.base import Format

logger = logging.getLogger("calbus.publisher")

T = TypeVar("T")

# send_with_time 的时间参数取该值时由总线填入当前时间
CURRENT_TIME = -1


class PublisherEvent(enum.Enum):
    CONNECTED = PublisherEventType.CONNECTED
    DISCONNECTED = PublisherEventType.DISCONNECTED


class Publisher(TopicEndpoint[T]):
    """
    类型化发布者：把消息按绑定的 Format 编码后交给总线。

    Example::

        pub = Publisher("/kpns/demo/ping", MsgpackFormat(Ping))
        pub.send(Ping(sync=1))
    """

    kind = "publisher"

    def __init__(self, topic_name: str, fmt: Format[T], *, engine: BusEngine | None = None) -> None:
        super().__init__(topic_name, fmt, engine)
        self._event_slots: Dict[PublisherEvent, CallbackSlot] = {}
        topic_type, description = self._native_type_info()
        handle = self._engine.pub_new()
        if not self._engine.pub_create(handle, self.topic_name, topic_type, description):
            self._engine.pub_destroy(handle)
            raise PublisherCreationFailed(topic_name)
        self._handle = handle

    def set_id(self, id_: int) -> bool:
        if self._handle is None:
            return False
        return self._engine.pub_set_id(self._handle, id_)

    def set_shm_buffer_count(self, count: int) -> bool:
        if self._handle is None:
            return False
        return self._engine.pub_shm_set_buffer_count(self._handle, count)

    def is_subscribed(self) -> bool:
        """当前是否有订阅者连接（只是快照）。"""
        if self._handle is None:
            return False
        return self._engine.pub_is_subscribed(self._handle)

    def send(self, message: T) -> None:
        self.send_with_time(message, CURRENT_TIME)

    def send_with_time(self, message: T, time_us: int) -> None:
        """同 send，但由调用方指定消息时间（微秒）。"""
        buf = bytearray()
        self.format.serialize(message, buf)

        expected = len(buf)
        sent = self._engine.pub_send(self._handle, buf, time_us) if self._handle is not None else 0
        logger.debug(f"Published {sent} / {expected} bytes")
        if sent != expected:
            raise PublishFailed(expected, sent)

    def on_event(self, event: PublisherEvent, callback: Callable[[PublisherEventData], None]) -> bool:
        """注册发布者事件回调，同一事件再次注册会替换旧回调。"""
        return self._register_event(event, callback, getattr(callback, "__name__", None))

    def on_subscribed(self, callback: Callable[[], None]) -> bool:
        """每当有新的订阅者连接时调用 callback()。"""
        return self._register_event(
            PublisherEvent.CONNECTED,
            lambda _data: callback(),
            getattr(callback, "__name__", None),
        )

    def remove_event_callback(self, event: PublisherEvent) -> bool:
        if self._handle is None:
            return False
        removed = self._engine.pub_rem_event_callback(self._handle, event.value)
        slot = self._event_slots.pop(event, None)
        if slot is not None:
            slot.retire()
        return removed

    def _register_event(self, event: PublisherEvent, func: Callable[[PublisherEventData], None], name: str | None) -> bool:
        if self._handle is None:
            return False
        slot = CallbackSlot(func, name)
        if not self._engine.pub_add_event_callback(self._handle, event.value, event_trampoline(), slot):
            return False
        previous = self._event_slots.get(event)
        self._event_slots[event] = slot
        if previous is not None:
            previous.retire()
        return True

    def _release(self, handle: int) -> None:
        self._engine.pub_destroy(handle)
        for slot in self._event_slots.values():
            slot.retire()
        self._event_slots.clear()


__all__ = ["CURRENT_TIME", "Publisher", "PublisherEvent"]
