"""
进程内总线引擎。

对上层只暴露基于句柄的原语：创建/销毁发布者与订阅者、发送、接收、注册回调、
释放接收缓冲区，以及进程级的初始化/终止和健康状态。Publisher / Subscriber 只通过
这些原语与引擎交互，不直接接触内部数据结构。
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Deque, Dict, Iterable, List, Sequence, Tuple

from .config import CalConfig

logger = logging.getLogger("calbus.engine")

INIT_DEFAULT = 0x01
INIT_ALL = 0xFF

# 传给 sub_receive 的超时：负数表示无限等待
WAIT_FOREVER = -1


class ProcessSeverity(IntEnum):
    UNKNOWN = 0
    HEALTHY = 1
    WARNING = 2
    CRITICAL = 3
    FAILED = 4


class ProcessSeverityLevel(IntEnum):
    LEVEL1 = 1
    LEVEL2 = 2
    LEVEL3 = 3
    LEVEL4 = 4
    LEVEL5 = 5


class PublisherEventType(IntEnum):
    NONE = 0
    CONNECTED = 1
    DISCONNECTED = 2


@dataclass(frozen=True)
class ReceiveCallbackData:
    """接收回调携带的原始数据。"""

    buf: bytes
    size: int
    id: int
    time: int  # 发送时间（总线时间，微秒）
    clock: int  # 该发布者的发送计数


@dataclass(frozen=True)
class PublisherEventData:
    type: PublisherEventType
    time: int
    topic_name: str
    subscriber_handle: int


ReceiveCallback = Callable[[str, ReceiveCallbackData, Any], None]
EventCallback = Callable[[str, PublisherEventData, Any], None]


def native_string(text: str, what: str = "text") -> str:
    """总线只接受不含 NUL 的文本，否则抛出 ValueError。"""
    if not isinstance(text, str):
        raise TypeError(f"{what} must be str, got {type(text).__name__}")
    if "\x00" in text:
        raise ValueError(f"{what} contains an interior NUL character: {text!r}")
    return text


class BusClock:
    """总线时间。time_scale > 1 时总线时间比墙钟走得快。"""

    def __init__(self, time_scale: float = 1.0) -> None:
        self.time_scale = time_scale
        self._origin_wall = time.time()
        self._origin_mono = time.monotonic()

    def now_us(self) -> int:
        elapsed = (time.monotonic() - self._origin_mono) * self.time_scale
        return int((self._origin_wall + elapsed) * 1_000_000)

    def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            return
        time.sleep(ms / 1000.0 / self.time_scale)


class _Dispatcher:
    """在独立线程中按顺序执行回调的分发器。limit 为待分发回调的上限，None 表示不限。"""

    def __init__(self, name: str, limit: int | None = None) -> None:
        self._queue: Deque[Any] = deque()
        self._cond = threading.Condition()
        self._limit = limit
        self._stopping = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def submit(self, func: Callable[..., None], *args: Any) -> bool:
        """加入一个回调。队列已满时丢弃最旧的待分发回调并返回 False。"""
        with self._cond:
            if self._stopping:
                return True
            accepted = True
            if self._limit is not None and len(self._queue) >= self._limit:
                self._queue.popleft()
                accepted = False
            self._queue.append((func, args))
            self._cond.notify()
            return accepted

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def stop(self, timeout: float) -> bool:
        """停止分发并等待正在执行的回调结束，返回线程是否已退出。"""
        with self._cond:
            self._stopping = True
            dropped = len(self._queue)
            self._queue.clear()
            self._cond.notify_all()
        if dropped:
            logger.debug(f"{self._thread.name}: 丢弃 {dropped} 个尚未分发的回调")
        if threading.current_thread() is self._thread or not self._thread.is_alive():
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"分发线程 {self._thread.name} 在 {timeout:.1f}s 内未退出")
            return False
        return True

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._stopping:
                    self._cond.wait()
                if self._stopping:
                    return
                func, args = self._queue.popleft()
            try:
                func(*args)
            except Exception:
                logger.exception(f"{self._thread.name}: 回调执行失败")


@dataclass
class _Sample:
    data: bytes
    id: int
    time: int
    clock: int


@dataclass
class _PublisherEntry:
    handle: int
    topic_name: str | None = None
    topic_type: str = ""
    description: bytes = b""
    id: int = 0
    buffer_count: int = 1
    clock: int = 0
    event_callbacks: Dict[PublisherEventType, Tuple[EventCallback, Any]] = field(default_factory=dict)
    dispatcher: _Dispatcher | None = None


@dataclass
class _SubscriberEntry:
    handle: int
    queue_size: int
    topic_name: str | None = None
    topic_type: str = ""
    description: bytes = b""
    ids: set[int] = field(default_factory=set)
    pending: Deque[_Sample] = field(default_factory=deque)
    cond: threading.Condition = field(default_factory=threading.Condition)
    callback: Tuple[ReceiveCallback, Any] | None = None
    dispatcher: _Dispatcher | None = None
    closed: bool = False
    dropped: int = 0

    def deliver(self, sample: _Sample) -> None:
        if self.ids and sample.id not in self.ids:
            return
        if self.callback is not None and self.dispatcher is not None:
            callback, ctx = self.callback
            data = ReceiveCallbackData(
                buf=sample.data, size=len(sample.data), id=sample.id, time=sample.time, clock=sample.clock
            )
            if not self.dispatcher.submit(callback, self.topic_name, data, ctx):
                self._dropped_oldest()
            return
        with self.cond:
            if len(self.pending) >= self.queue_size:
                self.pending.popleft()
                self._dropped_oldest()
            self.pending.append(sample)
            self.cond.notify()

    def _dropped_oldest(self) -> None:
        self.dropped += 1
        logger.warning(f"订阅者 {self.handle} ({self.topic_name}) 接收队列已满，丢弃最旧的消息")

    def wake(self) -> None:
        with self.cond:
            self.closed = True
            self.pending.clear()
            self.cond.notify_all()


class BusEngine:
    """
    进程内发布/订阅引擎。

    所有注册信息由一把 RLock 保护；每个带接收回调的订阅者拥有自己的分发线程，
    发布者事件回调同样在发布者自己的分发线程中执行。
    """

    def __init__(self, config: CalConfig | None = None) -> None:
        self.config = config or CalConfig()
        self.clock = BusClock(self.config.time_scale)
        self._lock = threading.RLock()
        self._handles = itertools.count(1)
        self._publishers: Dict[int, _PublisherEntry] = {}
        self._subscribers: Dict[int, _SubscriberEntry] = {}
        self._buffers: Dict[int, memoryview] = {}
        self._init_count = 0
        self._unit_name: str | None = None
        self._argv: List[str] = []
        self._state: Tuple[ProcessSeverity, ProcessSeverityLevel, str] = (
            ProcessSeverity.UNKNOWN,
            ProcessSeverityLevel.LEVEL1,
            "",
        )

    # ------------------------------------------------------------------
    # 进程生命周期
    # ------------------------------------------------------------------

    def initialize(
        self,
        argv: Sequence[str],
        unit_name: str,
        flags: int = INIT_DEFAULT,
        config: CalConfig | None = None,
    ) -> int:
        """初始化总线。返回 -1 表示失败，0 表示首次初始化，1 表示已经初始化过。"""
        try:
            native_string(unit_name, "unit_name")
            args = [native_string(arg, "argv") for arg in argv]
        except (TypeError, ValueError):
            logger.exception("Invalid unit name or arguments for bus initialization")
            return -1
        with self._lock:
            if self._init_count > 0:
                self._init_count += 1
                if config is not None and config != self.config:
                    logger.warning("总线已初始化，忽略新的配置")
                return 1
            if config is not None:
                self.config = config
                self.clock = BusClock(config.time_scale)
            self._init_count = 1
            self._unit_name = unit_name
            self._argv = args
            logger.debug(f"bus initialized for '{unit_name}' (flags=0x{flags:02x})")
            return 0

    def finalize(self, flags: int = INIT_ALL) -> int:
        """终止总线。最后一次终止会销毁所有句柄并停止所有分发线程。"""
        with self._lock:
            if self._init_count == 0:
                return 1
            self._init_count -= 1
            if self._init_count > 0:
                return 0
            publishers = list(self._publishers.values())
            subscribers = list(self._subscribers.values())
            self._publishers.clear()
            self._subscribers.clear()
            outstanding = len(self._buffers)
            self._state = (ProcessSeverity.UNKNOWN, ProcessSeverityLevel.LEVEL1, "")
        if outstanding:
            logger.warning(f"总线终止时仍有 {outstanding} 个接收缓冲区未释放")
        for sub in subscribers:
            sub.wake()
            self._stop_dispatcher(sub.dispatcher)
        for pub in publishers:
            self._stop_dispatcher(pub.dispatcher)
        logger.debug(f"bus finalized (flags=0x{flags:02x})")
        return 0

    def process_is_ok(self) -> bool:
        with self._lock:
            return self._init_count > 0

    def process_set_state(self, severity: ProcessSeverity, level: ProcessSeverityLevel, info: str) -> None:
        native_string(info, "info")
        with self._lock:
            self._state = (ProcessSeverity(severity), ProcessSeverityLevel(level), info)

    def process_get_state(self) -> Tuple[ProcessSeverity, ProcessSeverityLevel, str]:
        with self._lock:
            return self._state

    def process_sleep_ms(self, ms: int) -> None:
        self.clock.sleep_ms(ms)

    def now_us(self) -> int:
        return self.clock.now_us()

    @property
    def unit_name(self) -> str | None:
        return self._unit_name

    # ------------------------------------------------------------------
    # 发布者
    # ------------------------------------------------------------------

    def pub_new(self) -> int:
        handle = next(self._handles)
        with self._lock:
            self._publishers[handle] = _PublisherEntry(handle=handle)
        return handle

    def pub_create(self, handle: int, topic_name: str, topic_type: str, description: bytes) -> bool:
        with self._lock:
            pub = self._publishers.get(handle)
            if pub is None or self._init_count == 0:
                return False
            if not self._check_types(topic_name, topic_type, self._topic_subscribers(topic_name)):
                return False
            pub.topic_name = topic_name
            pub.topic_type = topic_type
            pub.description = bytes(description)
        logger.debug(f"publisher {handle} bound to '{topic_name}' as '{topic_type}'")
        return True

    def pub_destroy(self, handle: int) -> bool:
        with self._lock:
            pub = self._publishers.pop(handle, None)
        if pub is None:
            return False
        self._stop_dispatcher(pub.dispatcher)
        return True

    def pub_set_id(self, handle: int, id_: int) -> bool:
        with self._lock:
            pub = self._publishers.get(handle)
            if pub is None:
                return False
            pub.id = int(id_)
            return True

    def pub_shm_set_buffer_count(self, handle: int, count: int) -> bool:
        if count < 1:
            return False
        with self._lock:
            pub = self._publishers.get(handle)
            if pub is None:
                return False
            pub.buffer_count = int(count)
            return True

    def pub_is_subscribed(self, handle: int) -> bool:
        with self._lock:
            pub = self._publishers.get(handle)
            if pub is None or pub.topic_name is None:
                return False
            return bool(self._topic_subscribers(pub.topic_name))

    def pub_send(self, handle: int, data: bytes | bytearray | memoryview, time_us: int = -1) -> int:
        """发送数据，返回总线接受的字节数。time_us 为负数时使用当前总线时间。"""
        with self._lock:
            pub = self._publishers.get(handle)
            if pub is None or pub.topic_name is None or self._init_count == 0:
                return 0
            payload = bytes(data)
            pub.clock += 1
            sample = _Sample(
                data=payload,
                id=pub.id,
                time=self.now_us() if time_us < 0 else int(time_us),
                clock=pub.clock,
            )
            for sub in self._topic_subscribers(pub.topic_name):
                sub.deliver(sample)
            return len(payload)

    def pub_add_event_callback(
        self, handle: int, event: PublisherEventType, callback: EventCallback, ctx: Any = None
    ) -> bool:
        with self._lock:
            pub = self._publishers.get(handle)
            if pub is None:
                return False
            pub.event_callbacks[PublisherEventType(event)] = (callback, ctx)
            if pub.dispatcher is None:
                pub.dispatcher = self._new_dispatcher(f"calbus-pub-{handle}")
        return True

    def pub_rem_event_callback(self, handle: int, event: PublisherEventType) -> bool:
        with self._lock:
            pub = self._publishers.get(handle)
            if pub is None or PublisherEventType(event) not in pub.event_callbacks:
                return False
            del pub.event_callbacks[PublisherEventType(event)]
            if pub.event_callbacks:
                # 其他事件的回调仍在使用分发线程，已排队的事件照常分发
                return True
            previous, pub.dispatcher = pub.dispatcher, None
        self._stop_dispatcher(previous)
        return True

    # ------------------------------------------------------------------
    # 订阅者
    # ------------------------------------------------------------------

    def sub_new(self) -> int:
        handle = next(self._handles)
        with self._lock:
            self._subscribers[handle] = _SubscriberEntry(handle=handle, queue_size=self.config.queue_size)
        return handle

    def sub_create(self, handle: int, topic_name: str, topic_type: str, description: bytes) -> bool:
        with self._lock:
            sub = self._subscribers.get(handle)
            if sub is None or self._init_count == 0:
                return False
            if not self._check_types(topic_name, topic_type, self._topic_publishers(topic_name)):
                return False
            sub.topic_name = topic_name
            sub.topic_type = topic_type
            sub.description = bytes(description)
            self._fire_event(topic_name, PublisherEventType.CONNECTED, handle)
        logger.debug(f"subscriber {handle} bound to '{topic_name}' as '{topic_type}'")
        return True

    def sub_destroy(self, handle: int) -> bool:
        with self._lock:
            sub = self._subscribers.pop(handle, None)
            if sub is None:
                return False
            if sub.topic_name is not None:
                self._fire_event(sub.topic_name, PublisherEventType.DISCONNECTED, handle)
        sub.wake()
        self._stop_dispatcher(sub.dispatcher)
        return True

    def sub_set_id(self, handle: int, ids: Iterable[int]) -> bool:
        with self._lock:
            sub = self._subscribers.get(handle)
            if sub is None:
                return False
            sub.ids = {int(i) for i in ids}
            return True

    def sub_receive(self, handle: int, timeout_ms: int) -> Tuple[memoryview | None, int, int]:
        """
        取一条消息。

        Returns:
            (buf, size, time)：buf 为 None 表示超时；编码为空的消息返回长度为 0 的
            buf。buf 由总线持有，调用方必须用 free_mem 归还。
        """
        with self._lock:
            sub = self._subscribers.get(handle)
            if sub is None or sub.topic_name is None or self._init_count == 0:
                return None, 0, 0

        def ready() -> bool:
            return bool(sub.pending) or sub.closed

        with sub.cond:
            if timeout_ms < 0:
                sub.cond.wait_for(ready)
            elif timeout_ms > 0:
                sub.cond.wait_for(ready, timeout_ms / 1000.0)
            if not sub.pending:
                return None, 0, 0
            sample = sub.pending.popleft()
        buf = memoryview(bytearray(sample.data))
        with self._lock:
            self._buffers[id(buf)] = buf
        return buf, len(sample.data), sample.time

    def sub_poll(self, handle: int, timeout_ms: int, interrupt: threading.Event | None = None) -> bool | None:
        """
        等待消息到达但不取出。

        Returns:
            True 表示有消息可取，False 表示超时或被 interrupt 打断，None 表示句柄已失效。
        """
        with self._lock:
            sub = self._subscribers.get(handle)
            if sub is None or sub.topic_name is None or self._init_count == 0:
                return None

        def ready() -> bool:
            return bool(sub.pending) or sub.closed or (interrupt is not None and interrupt.is_set())

        with sub.cond:
            if timeout_ms < 0:
                sub.cond.wait_for(ready)
            elif timeout_ms > 0:
                sub.cond.wait_for(ready, timeout_ms / 1000.0)
            if sub.closed:
                return None
            return bool(sub.pending)

    def sub_interrupt(self, handle: int, interrupt: threading.Event) -> None:
        """设置 interrupt 并唤醒在 sub_poll 中等待它的线程。"""
        interrupt.set()
        with self._lock:
            sub = self._subscribers.get(handle)
        if sub is None:
            return
        with sub.cond:
            sub.cond.notify_all()

    def free_mem(self, buf: memoryview | None) -> None:
        if buf is None:
            return
        with self._lock:
            owned = self._buffers.pop(id(buf), None)
        if owned is None:
            logger.warning("free_mem: 缓冲区不属于总线或已被释放")
            return
        try:
            owned.release()
        except BufferError:
            logger.warning("free_mem: 缓冲区仍被解码结果引用，交由垃圾回收释放")

    def outstanding_buffers(self) -> int:
        with self._lock:
            return len(self._buffers)

    def sub_add_receive_callback(self, handle: int, callback: ReceiveCallback, ctx: Any = None) -> bool:
        """注册接收回调，替换已有的回调。"""
        with self._lock:
            sub = self._subscribers.get(handle)
            if sub is None:
                return False
            previous = sub.dispatcher
            sub.callback = (callback, ctx)
            sub.dispatcher = self._new_dispatcher(f"calbus-sub-{handle}", sub.queue_size)
        self._stop_dispatcher(previous)
        return True

    def sub_rem_receive_callback(self, handle: int) -> bool:
        """注销接收回调；返回时不会再有该回调在执行（在分发线程内调用除外）。"""
        with self._lock:
            sub = self._subscribers.get(handle)
            if sub is None or sub.callback is None:
                return False
            previous = sub.dispatcher
            sub.callback = None
            sub.dispatcher = None
        self._stop_dispatcher(previous)
        return True

    # ------------------------------------------------------------------
    # 监控
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """返回当前注册信息与进程状态，供监控使用。"""
        with self._lock:
            severity, level, info = self._state
            topics: List[Dict[str, Any]] = []
            for pub in self._publishers.values():
                if pub.topic_name is None:
                    continue
                topics.append(
                    {
                        "handle": pub.handle,
                        "kind": "publisher",
                        "topic": pub.topic_name,
                        "topic_type": pub.topic_type,
                        "id": pub.id,
                        "buffer_count": pub.buffer_count,
                        "clock": pub.clock,
                        "connections": len(self._topic_subscribers(pub.topic_name)),
                    }
                )
            for sub in self._subscribers.values():
                if sub.topic_name is None:
                    continue
                topics.append(
                    {
                        "handle": sub.handle,
                        "kind": "subscriber",
                        "topic": sub.topic_name,
                        "topic_type": sub.topic_type,
                        "ids": sorted(sub.ids),
                        "pending": len(sub.pending) + (sub.dispatcher.pending() if sub.dispatcher else 0),
                        "dropped": sub.dropped,
                        "callback": sub.callback is not None,
                    }
                )
            return {
                "unit_name": self._unit_name,
                "ok": self._init_count > 0,
                "state": severity.name.lower(),
                "level": int(level),
                "info": info,
                "topics": topics,
            }

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _topic_publishers(self, topic_name: str) -> List[_PublisherEntry]:
        return [p for p in self._publishers.values() if p.topic_name == topic_name]

    def _topic_subscribers(self, topic_name: str) -> List[_SubscriberEntry]:
        return [s for s in self._subscribers.values() if s.topic_name == topic_name]

    def _check_types(self, topic_name: str, topic_type: str, peers: Iterable[Any]) -> bool:
        for peer in peers:
            if peer.topic_type == topic_type:
                continue
            if self.config.strict_types:
                logger.error(
                    f"话题 '{topic_name}' 类型不一致: '{topic_type}' vs '{peer.topic_type}'，拒绝创建"
                )
                return False
            logger.warning(f"话题 '{topic_name}' 类型不一致: '{topic_type}' vs '{peer.topic_type}'")
        return True

    def _fire_event(self, topic_name: str, event: PublisherEventType, subscriber_handle: int) -> None:
        now = self.now_us()
        for pub in self._topic_publishers(topic_name):
            registered = pub.event_callbacks.get(event)
            if registered is None or pub.dispatcher is None:
                continue
            callback, ctx = registered
            data = PublisherEventData(type=event, time=now, topic_name=topic_name, subscriber_handle=subscriber_handle)
            pub.dispatcher.submit(callback, topic_name, data, ctx)

    @staticmethod
    def _new_dispatcher(name: str, limit: int | None = None) -> _Dispatcher:
        dispatcher = _Dispatcher(name, limit)
        dispatcher.start()
        return dispatcher

    def _stop_dispatcher(self, dispatcher: _Dispatcher | None) -> None:
        if dispatcher is not None:
            dispatcher.stop(self.config.dispatch_join_timeout)


_default_engine: BusEngine | None = None
_default_lock = threading.Lock()


def get_engine() -> BusEngine:
    """返回进程级默认引擎。"""
    global _default_engine
    with _default_lock:
        if _default_engine is None:
            _default_engine = BusEngine()
        return _default_engine


__all__ = [
    "BusClock",
    "BusEngine",
    "EventCallback",
    "INIT_ALL",
    "INIT_DEFAULT",
    "ProcessSeverity",
    "ProcessSeverityLevel",
    "PublisherEventData",
    "PublisherEventType",
    "ReceiveCallback",
    "ReceiveCallbackData",
    "WAIT_FOREVER",
    "get_engine",
    "native_string",
]
