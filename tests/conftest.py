"""
Pytest 配置和共享 fixtures
"""
from __future__ import annotations

import threading
from typing import Callable

import pytest

from calbus import BusEngine, Cal, CalConfig


# ============================================================
# 通用 Fixtures
# ============================================================

@pytest.fixture
def engine() -> BusEngine:
    """每个测试使用独立的总线引擎，测试结束后彻底终止"""
    bus = BusEngine(CalConfig(dispatch_join_timeout=2.0))
    yield bus
    while bus.process_is_ok():
        bus.finalize()


@pytest.fixture
def cal(engine: BusEngine) -> Cal:
    """已初始化的生命周期守卫"""
    guard = Cal("calbus_tests", engine=engine, argv=["pytest"])
    yield guard
    guard.close()


@pytest.fixture
def raw_send(engine: BusEngine, cal: Cal) -> Callable[[str, str, bytes], int]:
    """绕过 Format 直接向话题发送原始字节，用于构造损坏的消息"""
    handles: list[int] = []

    def send(topic: str, topic_type: str, payload: bytes) -> int:
        handle = engine.pub_new()
        assert engine.pub_create(handle, topic, topic_type, b"")
        handles.append(handle)
        return engine.pub_send(handle, payload)

    yield send
    for handle in handles:
        engine.pub_destroy(handle)


# ============================================================
# 辅助函数
# ============================================================

class Collector:
    """线程安全地收集回调参数，并可等待收集到指定数量"""

    def __init__(self) -> None:
        self.items: list = []
        self._cond = threading.Condition()

    def __call__(self, *args) -> None:
        with self._cond:
            self.items.append(args if len(args) != 1 else args[0])
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: float = 2.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.items) >= count, timeout)


@pytest.fixture
def collector() -> Collector:
    return Collector()
